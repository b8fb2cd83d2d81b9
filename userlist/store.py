"""SQLite-backed document store with push notifications for collection listeners."""
from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

import anyio

from .errors import StoreError
from .models import Session

logger = logging.getLogger("userlist.store")

COLLECTION_ROOT = "Users"

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

Children = List[Tuple[str, Dict[str, object]]]


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def child_path(root: str, key: str) -> str:
    """Return the document path for ``key`` under ``root``."""

    return f"{root}/{key}"


def split_path(path: str) -> Tuple[str, str]:
    """Split ``"<root>/<key>"`` into its two parts."""

    root, sep, key = path.partition("/")
    if not sep or not root or not key or "/" in key:
        raise ValueError(f"Invalid document path '{path}'")
    return root, key


class PushKeyGenerator:
    """Generate unique, chronologically sortable 20 character document keys.

    The first 8 characters encode the millisecond timestamp and the last 12 are
    random. Keys minted within the same millisecond reuse the previous random
    suffix incremented by one so that ordering still follows creation order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random: List[int] = [0] * 12

    def __call__(self) -> str:
        now = int(time.time() * 1000)
        with self._lock:
            if now <= self._last_ms:
                now = self._last_ms
                for index in range(11, -1, -1):
                    if self._last_random[index] != 63:
                        self._last_random[index] += 1
                        break
                    self._last_random[index] = 0
                else:
                    # 64**12 keys in one millisecond; move to the next one.
                    now += 1
            else:
                self._last_random = [secrets.randbelow(64) for _ in range(12)]
            self._last_ms = now
            random_part = "".join(PUSH_CHARS[value] for value in self._last_random)

        stamp: List[str] = []
        for _ in range(8):
            stamp.append(PUSH_CHARS[now % 64])
            now //= 64
        return "".join(reversed(stamp)) + random_part


generate_push_key = PushKeyGenerator()


class ValueListener(Protocol):
    def on_data_change(self, children: Children) -> None:
        ...

    def on_cancelled(self, message: str) -> None:
        ...


@dataclass
class _Subscription:
    listener: ValueListener
    token: Optional[str]


class ListenerRegistration:
    """Handle returned by :meth:`DocumentStore.listen`."""

    def __init__(self, store: Optional["DocumentStore"], root: str, listener: ValueListener) -> None:
        self._store = store
        self._root = root
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._store is not None

    def remove(self) -> None:
        store, self._store = self._store, None
        if store is not None:
            store._detach(self._root, self._listener)


class DocumentStore:
    """Keyed JSON documents grouped by collection root, with change listeners.

    Listener callbacks run on the event loop that performed the mutation, after
    the write has been committed, and always receive the complete collection.
    """

    def __init__(self, path: Path, *, require_auth: bool = True) -> None:
        _ensure_directory(path)
        self._path = path
        self._require_auth = require_auth
        self._listeners: Dict[str, List[_Subscription]] = {}
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the documents table if it does not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    root TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (root, key)
                );
                """
            )

    def push_key(self) -> str:
        return generate_push_key()

    # ------------------------------------------------------------------
    # Synchronous document access
    # ------------------------------------------------------------------
    def children(self, root: str) -> Children:
        """Return every document under ``root`` in key order."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM documents WHERE root = ? ORDER BY key",
                (root,),
            ).fetchall()

        result: Children = []
        for row in rows:
            try:
                value = json.loads(row["value"])
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable document %s", child_path(root, row["key"]))
                continue
            if isinstance(value, dict):
                result.append((str(row["key"]), value))
        return result

    def get(self, path: str) -> Optional[Dict[str, object]]:
        root, key = split_path(path)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM documents WHERE root = ? AND key = ?",
                (root, key),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    def put(self, path: str, value: Dict[str, object]) -> None:
        root, key = split_path(path)
        payload = json.dumps(value, sort_keys=True)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO documents (root, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(root, key) DO UPDATE
                   SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (root, key, payload, _current_timestamp().isoformat()),
            )

    def delete(self, path: str) -> bool:
        root, key = split_path(path)
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE root = ? AND key = ?",
                (root, key),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Asynchronous client operations
    # ------------------------------------------------------------------
    async def write(self, path: str, value: Dict[str, object], *, auth: Optional[Session] = None) -> None:
        """Set the document at ``path``, replacing any existing value."""

        self._check_available(auth)
        root, _ = split_path(path)
        try:
            await anyio.to_thread.run_sync(self.put, path, value)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        logger.debug("Wrote %s", path)
        self._dispatch(root)

    async def remove(self, path: str, *, auth: Optional[Session] = None) -> None:
        """Delete the document at ``path``; a missing document is not an error."""

        self._check_available(auth)
        root, _ = split_path(path)
        try:
            removed = await anyio.to_thread.run_sync(self.delete, path)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to remove {path}: {exc}") from exc
        if removed:
            logger.debug("Removed %s", path)
            self._dispatch(root)

    async def exists(self, path: str, *, auth: Optional[Session] = None) -> bool:
        self._check_available(auth)
        try:
            value = await anyio.to_thread.run_sync(self.get, path)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc
        return value is not None

    def listen(
        self,
        root: str,
        listener: ValueListener,
        *,
        auth: Optional[Session] = None,
    ) -> ListenerRegistration:
        """Register ``listener`` for ``root`` and deliver the current children."""

        if self._closed:
            listener.on_cancelled("Store connection is closed")
            return ListenerRegistration(None, root, listener)
        if not self._authorized(auth):
            listener.on_cancelled("Permission denied")
            return ListenerRegistration(None, root, listener)

        token = auth.token if auth is not None else None
        self._listeners.setdefault(root, []).append(_Subscription(listener, token))
        registration = ListenerRegistration(self, root, listener)
        try:
            children = self.children(root)
        except sqlite3.Error as exc:
            registration.remove()
            listener.on_cancelled(f"Failed to read {root}: {exc}")
            return registration
        self._deliver(listener, children)
        return registration

    def listener_count(self, root: str) -> int:
        return len(self._listeners.get(root, []))

    def revoke(self, token: str, reason: str = "Permission denied") -> int:
        """Cancel the listeners registered under the session ``token``."""

        revoked: List[_Subscription] = []
        for root in list(self._listeners):
            kept = []
            for subscription in self._listeners[root]:
                if subscription.token == token:
                    revoked.append(subscription)
                else:
                    kept.append(subscription)
            if kept:
                self._listeners[root] = kept
            else:
                self._listeners.pop(root, None)
        for subscription in revoked:
            self._cancel(subscription.listener, reason)
        if revoked:
            logger.info("Revoked %d listener(s) after sign-out", len(revoked))
        return len(revoked)

    def close(self, reason: str = "Store connection is closed") -> None:
        """Cancel every registered listener and refuse further operations."""

        self._closed = True
        listeners = self._listeners
        self._listeners = {}
        for subscriptions in listeners.values():
            for subscription in subscriptions:
                self._cancel(subscription.listener, reason)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _authorized(self, auth: Optional[Session]) -> bool:
        if not self._require_auth:
            return True
        if auth is None:
            return False
        return auth.expires_at > _current_timestamp()

    def _check_available(self, auth: Optional[Session]) -> None:
        if self._closed:
            raise StoreError("Store connection is closed")
        if not self._authorized(auth):
            raise StoreError("Permission denied")

    def _detach(self, root: str, listener: ValueListener) -> None:
        subscriptions = self._listeners.get(root)
        if not subscriptions:
            return
        kept = [subscription for subscription in subscriptions if subscription.listener is not listener]
        if kept:
            self._listeners[root] = kept
        else:
            self._listeners.pop(root, None)

    def _dispatch(self, root: str) -> None:
        subscriptions = list(self._listeners.get(root, []))
        if not subscriptions:
            return
        try:
            children = self.children(root)
        except sqlite3.Error as exc:
            logger.error("Dropping listeners for %s after read failure: %s", root, exc)
            self._listeners.pop(root, None)
            for subscription in subscriptions:
                self._cancel(subscription.listener, f"Failed to read {root}: {exc}")
            return
        for subscription in subscriptions:
            self._deliver(subscription.listener, children)

    def _deliver(self, listener: ValueListener, children: Children) -> None:
        try:
            listener.on_data_change(list(children))
        except Exception:
            logger.exception("Collection listener raised while handling a change")

    def _cancel(self, listener: ValueListener, reason: str) -> None:
        try:
            listener.on_cancelled(reason)
        except Exception:
            logger.exception("Collection listener raised while handling cancellation")


__all__ = [
    "COLLECTION_ROOT",
    "Children",
    "DocumentStore",
    "ListenerRegistration",
    "PushKeyGenerator",
    "ValueListener",
    "child_path",
    "generate_push_key",
    "split_path",
]
