"""Error taxonomy shared by the list screen and its collaborators."""
from __future__ import annotations


class UserListError(Exception):
    """Base class for errors that end a single user action."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(UserListError):
    """A required form field was empty."""


class StoreError(UserListError):
    """A mutation against the document store failed."""


class SyncError(UserListError):
    """The collection subscription could not be established or was dropped."""


class AuthError(UserListError):
    """The identity provider rejected a sign-in or sign-up attempt."""


__all__ = ["AuthError", "StoreError", "SyncError", "UserListError", "ValidationError"]
