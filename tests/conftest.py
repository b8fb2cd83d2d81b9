from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from userlist.models import Account, Session
from userlist.store import DocumentStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    db = DocumentStore(tmp_path / "userlist.sqlite3")
    db.initialize()
    return db


@pytest.fixture
def session() -> Session:
    now = datetime.now(timezone.utc)
    account = Account(id=1, email="owner@example.com", created_at=now)
    return Session(token="test-token", account=account, expires_at=now + timedelta(hours=1))
