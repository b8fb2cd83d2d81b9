"""Create, update and delete Records in the remote collection."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import StoreError
from .models import Record, Session, SessionSource, resolve_session
from .store import COLLECTION_ROOT, DocumentStore, child_path

logger = logging.getLogger("userlist.gateway")


class RecordMutationGateway:
    """Issue mutations against ``<root>/<id>`` documents.

    ``update`` follows the store's set semantics, so an unknown id is written
    as a new Record at that id. Pass ``strict_updates=True`` to reject updates
    of ids that are not present instead.

    ``auth`` may be a callable, which is looked up again for every mutation so
    that a sign-out takes effect immediately.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        root: str = COLLECTION_ROOT,
        auth: SessionSource = None,
        strict_updates: bool = False,
    ) -> None:
        self._store = store
        self._root = root
        self._auth = auth
        self._strict_updates = strict_updates

    def _session(self) -> Optional[Session]:
        return resolve_session(self._auth)

    def _path(self, record_id: str) -> str:
        if not record_id or "/" in record_id:
            raise StoreError(f"Invalid record id '{record_id}'")
        return child_path(self._root, record_id)

    async def create(self, name: str, email: str) -> str:
        record_id = self._store.push_key()
        record = Record(id=record_id, name=name, email=email)
        await self._store.write(self._path(record_id), record.to_dict(), auth=self._session())
        logger.info("Created record %s", record_id)
        return record_id

    async def update(self, record_id: str, name: str, email: str) -> None:
        path = self._path(record_id)
        if self._strict_updates and not await self._store.exists(path, auth=self._session()):
            raise StoreError(f"Record {record_id} no longer exists")
        record = Record(id=record_id, name=name, email=email)
        await self._store.write(path, record.to_dict(), auth=self._session())
        logger.info("Updated record %s", record_id)

    async def delete(self, record_id: str) -> None:
        await self._store.remove(self._path(record_id), auth=self._session())
        logger.info("Deleted record %s", record_id)


__all__ = ["RecordMutationGateway"]
