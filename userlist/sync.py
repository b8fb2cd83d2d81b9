"""Live synchronisation of the local record list with the document store."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

import anyio

from .errors import SyncError
from .models import ListSnapshot, Record, SessionSource, resolve_session
from .store import Children, DocumentStore, ListenerRegistration

logger = logging.getLogger("userlist.sync")

SnapshotObserver = Callable[[ListSnapshot], None]


def snapshot_from_children(children: Children) -> ListSnapshot:
    """Convert raw store children into Records, skipping unreadable documents."""

    records: List[Record] = []
    for key, value in children:
        try:
            records.append(Record.from_dict(value, key=key))
        except ValueError as exc:
            logger.warning("Ignoring malformed record %s: %s", key, exc)
    return tuple(records)


class SnapshotStream:
    """Non-restartable async stream of full collection snapshots.

    Only the most recent snapshot is retained between reads, so a slow
    consumer skips intermediate states and converges on the latest one.
    """

    def __init__(self, store: DocumentStore, collection: str, auth: SessionSource) -> None:
        self._store = store
        self._collection = collection
        self._auth = auth
        self._registration: Optional[ListenerRegistration] = None
        self._latest: Optional[ListSnapshot] = None
        self._error: Optional[SyncError] = None
        self._wakeup: Optional[anyio.Event] = None
        self._started = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._finished

    def open(self) -> None:
        if self._started:
            return
        self._started = True
        self._registration = self._store.listen(
            self._collection, self, auth=resolve_session(self._auth)
        )

    # Store listener callbacks
    def on_data_change(self, children: Children) -> None:
        if self._finished:
            return
        self._latest = snapshot_from_children(children)
        self._wake()

    def on_cancelled(self, message: str) -> None:
        if self._finished:
            return
        logger.warning("Subscription to %s ended: %s", self._collection, message)
        self._error = SyncError(message)
        self._release()
        self._wake()

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _release(self) -> None:
        registration, self._registration = self._registration, None
        if registration is not None:
            registration.remove()

    # Async iteration
    def __aiter__(self) -> "SnapshotStream":
        return self

    async def __anext__(self) -> ListSnapshot:
        self.open()
        while True:
            if self._latest is not None:
                snapshot, self._latest = self._latest, None
                return snapshot
            if self._error is not None:
                error, self._error = self._error, None
                self._finished = True
                raise error
            if self._finished:
                raise StopAsyncIteration
            self._wakeup = anyio.Event()
            try:
                await self._wakeup.wait()
            finally:
                self._wakeup = None

    async def aclose(self) -> None:
        self._finished = True
        self._latest = None
        self._release()
        self._wake()

    async def __aenter__(self) -> "SnapshotStream":
        if self._finished:
            raise RuntimeError("Snapshot streams cannot be restarted")
        self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class RemoteCollectionWatcher:
    """Subscribe to a collection and republish it as whole snapshots."""

    def __init__(self, store: DocumentStore, *, auth: SessionSource = None) -> None:
        self._store = store
        self._auth = auth

    def subscribe(self, collection_name: str) -> SnapshotStream:
        return SnapshotStream(self._store, collection_name, self._auth)


class LocalListProjection:
    """Holds the last applied snapshot and tells renderers when it changes."""

    def __init__(self) -> None:
        self._snapshot: ListSnapshot = ()
        self._observers: List[SnapshotObserver] = []

    def apply(self, snapshot: ListSnapshot) -> None:
        self._snapshot = tuple(snapshot)
        for observer in list(self._observers):
            observer(self._snapshot)

    def current(self) -> ListSnapshot:
        return self._snapshot

    def find(self, record_id: str) -> Optional[Record]:
        for record in self._snapshot:
            if record.id == record_id:
                return record
        return None

    def add_observer(self, observer: SnapshotObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove


__all__ = [
    "LocalListProjection",
    "RemoteCollectionWatcher",
    "SnapshotStream",
    "snapshot_from_children",
]
