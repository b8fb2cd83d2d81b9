from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from userlist.errors import StoreError
from userlist.models import Session
from userlist.store import (
    COLLECTION_ROOT,
    Children,
    DocumentStore,
    PushKeyGenerator,
    child_path,
    split_path,
)


class RecordingListener:
    def __init__(self) -> None:
        self.changes: List[Children] = []
        self.cancellations: List[str] = []

    def on_data_change(self, children: Children) -> None:
        self.changes.append(children)

    def on_cancelled(self, message: str) -> None:
        self.cancellations.append(message)


def test_push_keys_are_unique_and_chronological() -> None:
    generate = PushKeyGenerator()
    keys = [generate() for _ in range(500)]

    assert len(set(keys)) == len(keys)
    assert keys == sorted(keys)
    assert all(len(key) == 20 for key in keys)


def test_paths_round_trip_and_reject_nesting() -> None:
    assert child_path(COLLECTION_ROOT, "abc") == "Users/abc"
    assert split_path("Users/abc") == ("Users", "abc")

    for invalid in ("Users", "Users/", "/abc", "Users/a/b"):
        with pytest.raises(ValueError):
            split_path(invalid)


@pytest.mark.anyio
async def test_listener_receives_current_children_and_every_change(
    store: DocumentStore, session: Session
) -> None:
    await store.write("Users/b", {"id": "b", "name": "Bob", "email": "b@x.com"}, auth=session)
    listener = RecordingListener()
    registration = store.listen("Users", listener, auth=session)

    assert listener.changes == [[("b", {"email": "b@x.com", "id": "b", "name": "Bob"})]]

    await store.write("Users/a", {"id": "a", "name": "Alice", "email": "a@x.com"}, auth=session)
    assert [key for key, _ in listener.changes[-1]] == ["a", "b"]

    await store.remove("Users/b", auth=session)
    assert [key for key, _ in listener.changes[-1]] == ["a"]

    registration.remove()
    await store.write("Users/c", {"id": "c", "name": "Cy", "email": "c@x.com"}, auth=session)
    assert len(listener.changes) == 3
    assert store.listener_count("Users") == 0


@pytest.mark.anyio
async def test_removing_missing_document_is_silent(store: DocumentStore, session: Session) -> None:
    listener = RecordingListener()
    store.listen("Users", listener, auth=session)

    await store.remove("Users/missing", auth=session)

    assert listener.changes == [[]]
    assert listener.cancellations == []


@pytest.mark.anyio
async def test_mutations_without_session_are_denied(store: DocumentStore) -> None:
    with pytest.raises(StoreError, match="Permission denied"):
        await store.write("Users/a", {"name": "A", "email": "a@x.com"})
    with pytest.raises(StoreError, match="Permission denied"):
        await store.remove("Users/a")

    listener = RecordingListener()
    registration = store.listen("Users", listener)
    assert listener.cancellations == ["Permission denied"]
    assert not registration.active


@pytest.mark.anyio
async def test_expired_session_is_denied(store: DocumentStore, session: Session) -> None:
    expired = Session(
        token=session.token,
        account=session.account,
        expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
    with pytest.raises(StoreError, match="Permission denied"):
        await store.write("Users/a", {"name": "A", "email": "a@x.com"}, auth=expired)


@pytest.mark.anyio
async def test_open_store_allows_anonymous_access(tmp_path) -> None:
    open_store = DocumentStore(tmp_path / "open.sqlite3", require_auth=False)
    open_store.initialize()

    await open_store.write("Users/a", {"name": "A", "email": "a@x.com"})

    assert open_store.get("Users/a") == {"email": "a@x.com", "name": "A"}


@pytest.mark.anyio
async def test_close_cancels_listeners_and_rejects_writes(
    store: DocumentStore, session: Session
) -> None:
    listener = RecordingListener()
    store.listen("Users", listener, auth=session)

    store.close("Backend went away")

    assert listener.cancellations == ["Backend went away"]
    with pytest.raises(StoreError):
        await store.write("Users/a", {"name": "A", "email": "a@x.com"}, auth=session)


@pytest.mark.anyio
async def test_failing_listener_does_not_break_writer(store: DocumentStore, session: Session) -> None:
    class Exploding(RecordingListener):
        def on_data_change(self, children: Children) -> None:
            super().on_data_change(children)
            if len(self.changes) > 1:
                raise RuntimeError("boom")

    exploding = Exploding()
    healthy = RecordingListener()
    store.listen("Users", exploding, auth=session)
    store.listen("Users", healthy, auth=session)

    await store.write("Users/a", {"name": "A", "email": "a@x.com"}, auth=session)

    assert len(healthy.changes) == 2
    assert store.get("Users/a") is not None


@pytest.mark.anyio
async def test_revoke_cancels_only_that_sessions_listeners(
    store: DocumentStore, session: Session
) -> None:
    other = Session(token="other-token", account=session.account, expires_at=session.expires_at)
    revoked = RecordingListener()
    kept = RecordingListener()
    store.listen("Users", revoked, auth=session)
    store.listen("Users", kept, auth=other)

    assert store.revoke(session.token) == 1

    assert revoked.cancellations == ["Permission denied"]
    assert kept.cancellations == []
    assert store.listener_count("Users") == 1

    await store.write("Users/a", {"id": "a", "name": "A", "email": "a@x.com"}, auth=other)
    assert len(revoked.changes) == 1
    assert len(kept.changes) == 2
    assert store.revoke(session.token) == 0
