"""Single-form create/update state machine for the user list screen."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import ValidationError
from .gateway import RecordMutationGateway
from .models import ListSnapshot, Record

logger = logging.getLogger("userlist.editing")

MISSING_FIELDS_MESSAGE = "Please fill all fields"


class EditMode(enum.Enum):
    CREATING = "creating"
    EDITING = "editing"


@dataclass
class FormState:
    """Current contents of the name/email form."""

    name: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "email": self.email}


class EditSessionController:
    """Route form submissions to create or update a Record.

    The controller is either ``Creating`` (no pending record) or
    ``Editing(record_id)``. It returns to ``Creating`` after a successful
    update and when the record being edited disappears, and at no other time.
    """

    def __init__(self, gateway: RecordMutationGateway) -> None:
        self._gateway = gateway
        self._pending_record_id: Optional[str] = None
        self._generation = 0
        self._form_revision = 0
        self.form = FormState()

    @property
    def pending_record_id(self) -> Optional[str]:
        return self._pending_record_id

    @property
    def form_revision(self) -> int:
        """Bumped whenever the controller itself rewrites the form."""
        return self._form_revision

    @property
    def mode(self) -> EditMode:
        return EditMode.CREATING if self._pending_record_id is None else EditMode.EDITING

    @property
    def is_editing(self) -> bool:
        return self._pending_record_id is not None

    @property
    def submit_label(self) -> str:
        return "Update" if self.is_editing else "Save"

    def begin_edit(self, record: Record) -> None:
        if record.id is None:
            raise ValueError("Only stored records can be edited")
        self._transition(record.id)
        self._load_form(record.name, record.email)
        logger.debug("Editing record %s", record.id)

    async def submit(self, name: str, email: str) -> Optional[str]:
        """Create or update a Record from the form values.

        Returns the id of a newly created Record, or ``None`` after an update.
        Raises :class:`ValidationError` for blank fields and lets
        :class:`~userlist.errors.StoreError` propagate, leaving the state and
        form untouched in both cases.
        """
        self.form.name = name
        self.form.email = email
        cleaned_name = name.strip()
        cleaned_email = email.strip()
        if not cleaned_name or not cleaned_email:
            raise ValidationError(MISSING_FIELDS_MESSAGE)

        generation = self._generation
        target = self._pending_record_id
        if target is None:
            record_id = await self._gateway.create(cleaned_name, cleaned_email)
            if self._generation == generation:
                self._load_form("", "")
            return record_id

        await self._gateway.update(target, cleaned_name, cleaned_email)
        # A delete or a new edit may have landed while the update was in flight.
        if self._generation == generation:
            self._transition(None)
            self._load_form("", "")
        return None

    def cancel_if_editing(self, record_id: str) -> bool:
        if self._pending_record_id is None or self._pending_record_id != record_id:
            return False
        self._transition(None)
        self._load_form("", "")
        logger.debug("Edit of record %s cancelled", record_id)
        return True

    def cancel(self) -> None:
        if self._pending_record_id is not None:
            self.cancel_if_editing(self._pending_record_id)

    def reconcile(self, snapshot: ListSnapshot) -> bool:
        """Leave ``Editing`` when the pending record is missing from ``snapshot``."""

        pending = self._pending_record_id
        if pending is None:
            return False
        if any(record.id == pending for record in snapshot):
            return False
        return self.cancel_if_editing(pending)

    def _transition(self, record_id: Optional[str]) -> None:
        self._pending_record_id = record_id
        self._generation += 1

    def _load_form(self, name: str, email: str) -> None:
        self.form.name = name
        self.form.email = email
        self._form_revision += 1


__all__ = ["EditMode", "EditSessionController", "FormState", "MISSING_FIELDS_MESSAGE"]
