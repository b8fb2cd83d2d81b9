"""Email/password identity provider with in-memory sign-in sessions."""
from __future__ import annotations

import logging
import re
import secrets
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from passlib.context import CryptContext

from .errors import AuthError
from .models import Account, Session

logger = logging.getLogger("userlist.identity")

PASSWORD_MIN_LENGTH = 8

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[A-Z])(?=.*[a-z])(?=.*[0-9])(?=.*[!@#$%^&*()_+=\-\[\]{};':\"\\|,.<>/?]).{8,}$"
)

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class _SessionRecord:
    account: Account
    expires_at: datetime


class SessionManager:
    """Generate, validate, and revoke sign-in sessions."""

    def __init__(self, *, ttl: timedelta = timedelta(days=7)) -> None:
        self._ttl = ttl
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    def create(self, account: Account) -> Session:
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + self._ttl
        with self._lock:
            self._sessions[token] = _SessionRecord(account=account, expires_at=expires_at)
        return Session(token=token, account=account, expires_at=expires_at)

    def resolve(self, token: str) -> Optional[Session]:
        now = self._now()
        with self._lock:
            record = self._sessions.get(token)
            if record is None:
                return None
            if record.expires_at <= now:
                self._sessions.pop(token, None)
                return None
            record.expires_at = now + self._ttl
            return Session(token=token, account=record.account, expires_at=record.expires_at)

    def destroy(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def _now(self) -> datetime:
        return _current_timestamp()


class IdentityProvider:
    """Sign accounts up and in against a SQLite account table."""

    def __init__(
        self,
        path: Path,
        *,
        sessions: Optional[SessionManager] = None,
        allowed_email_domain: Optional[str] = None,
    ) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._sessions = sessions or SessionManager()
        domain = (allowed_email_domain or "").strip().lstrip("@").lower()
        self._allowed_email_domain = domain or None

    @property
    def allowed_email_domain(self) -> Optional[str]:
        return self._allowed_email_domain

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_sign_up(self, email: str, password: str, confirm_password: str) -> None:
        """Raise :class:`AuthError` describing the first unmet sign-up rule."""

        if not email.strip() or not password.strip() or not confirm_password.strip():
            raise AuthError("Please fill all fields")
        if password != confirm_password:
            raise AuthError("Passwords do not match")
        if len(password) < PASSWORD_MIN_LENGTH:
            raise AuthError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")

        normalized = _normalize_email(email)
        if not _EMAIL_PATTERN.match(normalized):
            raise AuthError("Email address is not valid")
        domain = self._allowed_email_domain
        if domain is not None and not normalized.endswith(f"@{domain}"):
            raise AuthError(f"Email must be in valid format and end with @{domain}")

        if not _PASSWORD_PATTERN.match(password):
            raise AuthError(
                "Password must contain at least one uppercase letter, one lowercase letter, "
                f"one number, one special character, and be at least {PASSWORD_MIN_LENGTH} "
                "characters long"
            )

    # ------------------------------------------------------------------
    # Identity operations
    # ------------------------------------------------------------------
    def sign_up(self, email: str, password: str, confirm_password: Optional[str] = None) -> Session:
        if confirm_password is None:
            confirm_password = password
        self.validate_sign_up(email, password, confirm_password)

        normalized = _normalize_email(email)
        created_at = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO accounts (email, password_hash, created_at) VALUES (?, ?, ?)",
                    (normalized, _pwd_context.hash(password), created_at.isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                raise AuthError("An account with that email already exists") from exc
            account_id = cursor.lastrowid

        account = Account(id=int(account_id), email=normalized, created_at=created_at)
        logger.info("Registered account %s", normalized)
        return self._sessions.create(account)

    def sign_in(self, email: str, password: str) -> Session:
        if not email.strip() or not password.strip():
            raise AuthError("Please fill all fields")

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = ?",
                (_normalize_email(email),),
            ).fetchone()

        if row is None or not self._verify_password(password, str(row["password_hash"])):
            logger.info("Rejected sign-in for %s", _normalize_email(email))
            raise AuthError("Invalid email or password")

        return self._sessions.create(self._row_to_account(row))

    def current_session(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        return self._sessions.resolve(token)

    def sign_out(self, token: Optional[str]) -> None:
        if token:
            self._sessions.destroy(token)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _verify_password(password: str, hashed: str) -> bool:
        try:
            return _pwd_context.verify(password, hashed)
        except ValueError:
            return False

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=int(row["id"]),
            email=str(row["email"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
        )


__all__ = ["IdentityProvider", "PASSWORD_MIN_LENGTH", "SessionManager"]
