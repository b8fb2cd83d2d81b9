"""End-to-end tests for the browser interface and the live list websocket."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict

import pytest
from fastapi.testclient import TestClient

from userlist.config import Settings
from userlist.identity import IdentityProvider
from userlist.store import DocumentStore
from userlist.web import create_app

EMAIL = "alice@example.com"
PASSWORD = "Sup3rSecret!"


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "userlist.sqlite3"
    store = DocumentStore(db_path)
    store.initialize()
    identity = IdentityProvider(db_path)
    identity.initialize()
    identity.sign_up(EMAIL, PASSWORD, PASSWORD)
    return create_app(
        settings=Settings(database_path=db_path),
        store=store,
        identity=identity,
        session_secret="tests-secret-key",
    )


def _sign_in(client: TestClient) -> None:
    response = client.post(
        "/signin",
        data={"email": EMAIL, "password": PASSWORD},
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"].endswith("/users")


def _receive_until(websocket, predicate: Callable[[Dict[str, Any]], bool], limit: int = 20) -> Dict[str, Any]:
    for _ in range(limit):
        frame = websocket.receive_json()
        if predicate(frame):
            return frame
    raise AssertionError("Expected frame was not received")


def test_create_app_requires_session_secret(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        create_app(settings=Settings(database_path=tmp_path / "userlist.sqlite3"))


def test_root_redirects_to_sign_in_when_anonymous(app) -> None:
    with TestClient(app) as client:
        response = client.get("/", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"].endswith("/signin")

        users = client.get("/users", follow_redirects=False)
        assert users.status_code == 303


def test_sign_in_failure_is_reported(app) -> None:
    with TestClient(app) as client:
        response = client.post("/signin", data={"email": EMAIL, "password": "nope"})
        assert response.status_code == 200
        assert "Invalid email or password" in response.text

        blank = client.post("/signin", data={"email": "", "password": ""})
        assert "Please fill all fields" in blank.text


def test_sign_in_shows_list_page_and_skips_login_afterwards(app) -> None:
    with TestClient(app) as client:
        _sign_in(client)

        page = client.get("/users")
        assert page.status_code == 200
        assert EMAIL in page.text
        assert "Login successful" in page.text
        assert "/ws/users" in page.text

        again = client.get("/signin", follow_redirects=False)
        assert again.status_code == 303
        assert again.headers["location"].endswith("/users")
        assert "Already signed in" in client.get("/users").text


def test_sign_up_validates_and_signs_in(app) -> None:
    with TestClient(app) as client:
        mismatch = client.post(
            "/signup",
            data={"email": "bob@example.com", "password": PASSWORD, "confirm_password": "Other1234!"},
        )
        assert "Passwords do not match" in mismatch.text

        created = client.post(
            "/signup",
            data={"email": "bob@example.com", "password": PASSWORD, "confirm_password": PASSWORD},
            follow_redirects=False,
        )
        assert created.status_code == 303
        page = client.get("/users")
        assert "bob@example.com" in page.text
        assert "Account created successfully" in page.text


def test_logout_requires_confirmation(app) -> None:
    with TestClient(app) as client:
        _sign_in(client)

        confirm = client.get("/logout")
        assert confirm.status_code == 200
        assert "Are you sure you want to logout?" in confirm.text

        response = client.post("/logout", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"].endswith("/signin")
        assert client.get("/users", follow_redirects=False).status_code == 303


def test_websocket_requires_sign_in(app) -> None:
    with TestClient(app) as client:
        with client.websocket_connect("/ws/users") as websocket:
            frame = websocket.receive_json()
            assert frame == {"type": "error", "message": "Sign in required"}


def test_websocket_create_edit_delete_flow(app) -> None:
    with TestClient(app) as client:
        _sign_in(client)

        with client.websocket_connect("/ws/users") as websocket:
            initial = _receive_until(websocket, lambda frame: frame["type"] == "state")
            assert initial["records"] == []
            assert initial["submit_label"] == "Save"

            websocket.send_json({"type": "submit", "name": "", "email": "a@x.com"})
            notice = _receive_until(websocket, lambda frame: frame["type"] == "notice")
            assert notice == {"type": "notice", "message": "Please fill all fields", "category": "error"}

            websocket.send_json({"type": "submit", "name": "Alice", "email": "a@x.com"})
            state = _receive_until(
                websocket, lambda frame: frame["type"] == "state" and len(frame["records"]) == 1
            )
            record = state["records"][0]
            assert (record["name"], record["email"]) == ("Alice", "a@x.com")

            websocket.send_json({"type": "edit", "id": record["id"]})
            editing = _receive_until(
                websocket, lambda frame: frame["type"] == "state" and frame["mode"] == "editing"
            )
            assert editing["form"] == {"name": "Alice", "email": "a@x.com"}
            assert editing["submit_label"] == "Update"

            websocket.send_json({"type": "submit", "name": "Alicia", "email": "a2@x.com"})
            updated = _receive_until(
                websocket,
                lambda frame: frame["type"] == "state"
                and frame["records"]
                and frame["records"][0]["name"] == "Alicia",
            )
            assert updated["records"] == [{"id": record["id"], "name": "Alicia", "email": "a2@x.com"}]
            assert updated["mode"] == "creating"

            websocket.send_json({"type": "delete", "id": record["id"]})
            _receive_until(websocket, lambda frame: frame["type"] == "state" and frame["records"] == [])

            websocket.send_json({"type": "dance"})
            unknown = _receive_until(websocket, lambda frame: frame["type"] == "notice")
            assert unknown["category"] == "error"

        assert app.state.store.listener_count("Users") == 0


def test_sign_out_revokes_open_websocket(app) -> None:
    with TestClient(app) as client:
        _sign_in(client)

        with client.websocket_connect("/ws/users") as websocket:
            _receive_until(websocket, lambda frame: frame["type"] == "state")

            assert client.post("/logout", follow_redirects=False).status_code == 303
            revoked = _receive_until(websocket, lambda frame: frame["type"] == "notice")
            assert revoked == {"type": "notice", "message": "Permission denied", "category": "error"}

            websocket.send_json({"type": "submit", "name": "Mallory", "email": "m@x.com"})
            rejected = _receive_until(websocket, lambda frame: frame["type"] == "notice")
            assert rejected == {"type": "notice", "message": "Permission denied", "category": "error"}

        assert app.state.store.children("Users") == []
        assert app.state.store.listener_count("Users") == 0


def test_remote_changes_do_not_push_the_form(app) -> None:
    with TestClient(app) as client:
        _sign_in(client)

        with client.websocket_connect("/ws/users") as watching:
            initial = _receive_until(watching, lambda frame: frame["type"] == "state")
            assert initial["form"] == {"name": "", "email": ""}

            with client.websocket_connect("/ws/users") as other:
                _receive_until(other, lambda frame: frame["type"] == "state")
                other.send_json({"type": "submit", "name": "Bob", "email": "b@x.com"})
                _receive_until(
                    other, lambda frame: frame["type"] == "notice" and frame["message"] == "Data added"
                )

            update = _receive_until(
                watching, lambda frame: frame["type"] == "state" and len(frame["records"]) == 1
            )
            assert "form" not in update
            assert update["mode"] == "creating"

            watching.send_json({"type": "edit", "id": update["records"][0]["id"]})
            editing = _receive_until(
                watching, lambda frame: frame["type"] == "state" and frame["mode"] == "editing"
            )
            assert editing["form"] == {"name": "Bob", "email": "b@x.com"}
