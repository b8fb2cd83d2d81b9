"""Realtime user list: live record synchronisation with a single edit form."""

from __future__ import annotations

from typing import Any

from .errors import AuthError, StoreError, SyncError, ValidationError
from .models import ListSnapshot, Record
from .store import COLLECTION_ROOT, DocumentStore


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the web application."""

    from .web import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "AuthError",
    "COLLECTION_ROOT",
    "DocumentStore",
    "ListSnapshot",
    "Record",
    "StoreError",
    "SyncError",
    "ValidationError",
    "create_app",
]
