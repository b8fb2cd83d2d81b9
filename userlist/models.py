"""Domain models for the realtime user list."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class Record:
    """A user entry stored in the ``Users`` collection."""

    id: Optional[str]
    name: str
    email: str

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"id": self.id, "name": self.name, "email": self.email}

    @staticmethod
    def from_dict(data: Mapping[str, object], key: Optional[str] = None) -> "Record":
        """Build a :class:`Record` from a stored document.

        ``key`` is the document's path key and wins over any ``id`` field in the
        payload, since the path is what the store actually addresses.
        """
        name = data.get("name")
        email = data.get("email")
        if not isinstance(name, str) or not isinstance(email, str):
            raise ValueError("Record documents require string 'name' and 'email' fields")
        record_id = key if key is not None else data.get("id")
        if record_id is not None and not isinstance(record_id, str):
            raise ValueError("Record 'id' must be a string")
        return Record(id=record_id, name=name, email=email)


ListSnapshot = Tuple[Record, ...]


@dataclass(frozen=True)
class Account:
    """An identity-provider account."""

    id: int
    email: str
    created_at: datetime


@dataclass(frozen=True)
class Session:
    """A signed-in identity session."""

    token: str
    account: Account
    expires_at: datetime


# Either a fixed session or a callable that looks the session up on each use.
SessionSource = Union[Session, Callable[[], Optional[Session]], None]


def resolve_session(source: SessionSource) -> Optional[Session]:
    if source is None or isinstance(source, Session):
        return source
    return source()


@dataclass(frozen=True)
class Notice:
    """A message shown to the user after an action."""

    message: str
    category: str = "info"

    def to_dict(self) -> Dict[str, str]:
        return {"message": self.message, "category": self.category}


__all__ = [
    "Account",
    "ListSnapshot",
    "Notice",
    "Record",
    "Session",
    "SessionSource",
    "resolve_session",
]
