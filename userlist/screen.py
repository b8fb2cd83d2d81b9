"""The user list screen: live list, single form, and user-visible notices."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from .editing import EditSessionController
from .errors import StoreError, SyncError, ValidationError
from .gateway import RecordMutationGateway
from .models import ListSnapshot, Notice, SessionSource
from .store import COLLECTION_ROOT, DocumentStore
from .sync import LocalListProjection, RemoteCollectionWatcher, SnapshotStream

logger = logging.getLogger("userlist.screen")

NoticeCallback = Callable[[Notice], None]
RenderCallback = Callable[[], None]


class UserListScreen:
    """Wire the watcher, projection, edit controller and gateway for one view.

    All methods are expected to run on the same event loop, one at a time.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        session: SessionSource = None,
        root: str = COLLECTION_ROOT,
        strict_updates: bool = False,
        on_render: Optional[RenderCallback] = None,
        on_notice: Optional[NoticeCallback] = None,
    ) -> None:
        self._root = root
        self.projection = LocalListProjection()
        self.gateway = RecordMutationGateway(
            store,
            root=root,
            auth=session,
            strict_updates=strict_updates,
        )
        self.controller = EditSessionController(self.gateway)
        self.watcher = RemoteCollectionWatcher(store, auth=session)
        self.notices: List[Notice] = []
        self._on_render = on_render
        self._on_notice = on_notice
        self._stream: Optional[SnapshotStream] = None

    @property
    def synced(self) -> bool:
        return self._stream is not None and not self._stream.closed

    async def run(self) -> None:
        """Apply snapshots until the subscription ends or the caller is cancelled."""

        stream = self.watcher.subscribe(self._root)
        self._stream = stream
        async with stream:
            try:
                async for snapshot in stream:
                    self._apply(snapshot)
            except SyncError as exc:
                self._notify(exc.message, "error")
                self._render()

    def _apply(self, snapshot: ListSnapshot) -> None:
        self.projection.apply(snapshot)
        if self.controller.reconcile(snapshot):
            self._notify("The record you were editing was deleted", "info")
        self._render()

    async def submit(self, name: str, email: str) -> bool:
        was_editing = self.controller.is_editing
        try:
            await self.controller.submit(name, email)
        except ValidationError as exc:
            self._notify(exc.message, "error")
            return False
        except StoreError as exc:
            logger.warning("Saving record failed: %s", exc)
            self._notify(exc.message, "error")
            return False
        finally:
            self._render()
        self._notify("Data updated" if was_editing else "Data added")
        return True

    def begin_edit(self, record_id: str) -> bool:
        record = self.projection.find(record_id)
        if record is None:
            self._notify("That record no longer exists", "error")
            return False
        self.controller.begin_edit(record)
        self._render()
        return True

    def cancel_edit(self) -> None:
        self.controller.cancel()
        self._render()

    async def delete(self, record_id: str) -> bool:
        try:
            await self.gateway.delete(record_id)
        except StoreError as exc:
            logger.warning("Deleting record %s failed: %s", record_id, exc)
            self._notify(exc.message, "error")
            return False
        self.controller.cancel_if_editing(record_id)
        self._notify("Data deleted")
        self._render()
        return True

    def view_state(self) -> Dict[str, object]:
        return {
            "records": [record.to_dict() for record in self.projection.current()],
            "form": self.controller.form.to_dict(),
            "form_revision": self.controller.form_revision,
            "mode": self.controller.mode.value,
            "editing_id": self.controller.pending_record_id,
            "submit_label": self.controller.submit_label,
        }

    def _notify(self, message: str, category: str = "info") -> None:
        notice = Notice(message=message, category=category)
        self.notices.append(notice)
        if self._on_notice is not None:
            self._on_notice(notice)

    def _render(self) -> None:
        if self._on_render is not None:
            self._on_render()


__all__ = ["UserListScreen"]
