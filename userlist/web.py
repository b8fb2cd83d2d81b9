"""Browser interface: sign-in, sign-up, and the live user list."""
from __future__ import annotations

import json
import logging
import math
import os
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import anyio
from fastapi import FastAPI, Form, Request, WebSocket, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .config import Settings, load_settings, resolve_config_path
from .errors import AuthError
from .identity import PASSWORD_MIN_LENGTH, IdentityProvider, SessionManager
from .models import Notice, Session
from .screen import UserListScreen
from .store import DocumentStore


TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

SESSION_TOKEN_KEY = "auth_token"

logger = logging.getLogger("userlist.web")


async def send_websocket_json(websocket: WebSocket, payload: Dict[str, Any]) -> None:
    """Send a JSON payload unless the client has already gone away."""

    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    await websocket.send_json(payload)


def _secure_cookies() -> bool:
    raw = os.getenv("USERLIST_SESSION_SECURE")
    if raw is None:
        return False
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def create_app(
    *,
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    identity: Optional[IdentityProvider] = None,
    session_secret: Optional[str] = None,
) -> FastAPI:
    """Create the user list web application."""

    if settings is None:
        settings = load_settings(resolve_config_path(os.getenv("USERLIST_CONFIG")))

    if store is None:
        store = DocumentStore(settings.database_path, require_auth=settings.require_auth)
        store.initialize()

    if identity is None:
        identity = IdentityProvider(
            settings.database_path,
            sessions=SessionManager(ttl=timedelta(minutes=settings.session_ttl_minutes)),
            allowed_email_domain=settings.allowed_email_domain,
        )
        identity.initialize()

    if session_secret is None:
        session_secret = settings.session_secret
    if not session_secret:
        raise RuntimeError("USERLIST_SESSION_SECRET must be configured to serve the web interface")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        store.close("Server is shutting down")

    app = FastAPI(
        title="Realtime User List",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.identity = identity

    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="userlist_session",
        https_only=_secure_cookies(),
        same_site="lax",
        max_age=settings.session_ttl_minutes * 60,
    )

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _current_session(scope_session: Dict[str, Any]) -> Optional[Session]:
        token = scope_session.get(SESSION_TOKEN_KEY)
        if not isinstance(token, str):
            return None
        session = identity.current_session(token)
        if session is None:
            scope_session.pop(SESSION_TOKEN_KEY, None)
        return session

    def _redirect(request: Request, name: str) -> RedirectResponse:
        return RedirectResponse(request.url_for(name), status_code=status.HTTP_303_SEE_OTHER)

    def _start_session(request: Request, session: Session) -> None:
        request.session.clear()
        request.session[SESSION_TOKEN_KEY] = session.token

    @app.get("/", response_class=HTMLResponse)
    async def root(request: Request):
        if _current_session(request.session) is None:
            return _redirect(request, "show_signin")
        return _redirect(request, "users")

    @app.get("/signin", response_class=HTMLResponse, name="show_signin")
    async def signin_form(request: Request):
        if _current_session(request.session) is not None:
            _flash(request, "Already signed in")
            return _redirect(request, "users")
        error = request.session.pop("signin_error", None)
        return templates.TemplateResponse(
            request,
            "signin.html",
            {"error": error, "messages": _consume_flash(request)},
        )

    @app.post("/signin", name="process_signin")
    async def process_signin(request: Request, email: str = Form(""), password: str = Form("")):
        try:
            session = identity.sign_in(email, password)
        except AuthError as exc:
            request.session["signin_error"] = exc.message
            return _redirect(request, "show_signin")

        _start_session(request, session)
        _flash(request, "Login successful", category="success")
        return _redirect(request, "users")

    @app.get("/signup", response_class=HTMLResponse, name="show_signup")
    async def signup_form(request: Request):
        error = request.session.pop("signup_error", None)
        return templates.TemplateResponse(
            request,
            "signup.html",
            {
                "error": error,
                "password_min_length": PASSWORD_MIN_LENGTH,
                "email_domain": identity.allowed_email_domain,
            },
        )

    @app.post("/signup", name="process_signup")
    async def process_signup(
        request: Request,
        email: str = Form(""),
        password: str = Form(""),
        confirm_password: str = Form(""),
    ):
        try:
            session = identity.sign_up(email, password, confirm_password)
        except AuthError as exc:
            request.session["signup_error"] = exc.message
            return _redirect(request, "show_signup")

        _start_session(request, session)
        _flash(request, "Account created successfully", category="success")
        return _redirect(request, "users")

    @app.get("/logout", response_class=HTMLResponse, name="confirm_logout")
    async def confirm_logout(request: Request):
        if _current_session(request.session) is None:
            return _redirect(request, "show_signin")
        return templates.TemplateResponse(request, "logout.html", {})

    @app.post("/logout", name="logout")
    async def logout(request: Request):
        token = request.session.get(SESSION_TOKEN_KEY)
        identity.sign_out(token)
        if isinstance(token, str):
            store.revoke(token)
        request.session.clear()
        return _redirect(request, "show_signin")

    @app.get("/users", response_class=HTMLResponse, name="users")
    async def users(request: Request):
        session = _current_session(request.session)
        if session is None:
            return _redirect(request, "show_signin")
        return templates.TemplateResponse(
            request,
            "users.html",
            {
                "account": session.account,
                "messages": _consume_flash(request),
                "feed_path": app.url_path_for("users_feed"),
            },
        )

    @app.websocket("/ws/users", name="users_feed")
    async def users_feed(websocket: WebSocket):
        session = _current_session(websocket.session)
        await websocket.accept()
        if session is None:
            await send_websocket_json(websocket, {"type": "error", "message": "Sign in required"})
            with suppress(Exception):
                await websocket.close(code=4401)
            return

        frames_in, frames_out = anyio.create_memory_object_stream(math.inf)

        form_revision: Optional[int] = None

        def on_render() -> None:
            nonlocal form_revision
            state = screen.view_state()
            # The form is only sent after the controller rewrites it.
            if state["form_revision"] == form_revision:
                del state["form"]
            form_revision = state["form_revision"]
            frames_in.send_nowait({"type": "state", **state})

        def on_notice(notice: Notice) -> None:
            frames_in.send_nowait({"type": "notice", **notice.to_dict()})

        screen = UserListScreen(
            store,
            session=lambda: identity.current_session(session.token),
            strict_updates=settings.strict_updates,
            on_render=on_render,
            on_notice=on_notice,
        )

        async def handle_action(payload: Dict[str, Any]) -> None:
            action = payload.get("type")
            record_id = str(payload.get("id") or "")
            if action == "submit":
                await screen.submit(str(payload.get("name") or ""), str(payload.get("email") or ""))
            elif action == "edit":
                screen.begin_edit(record_id)
            elif action == "cancel":
                screen.cancel_edit()
            elif action == "delete":
                await screen.delete(record_id)
            else:
                on_notice(Notice(message=f"Unknown action '{action}'", category="error"))

        async def pump_frames(task_group) -> None:
            try:
                async with frames_out:
                    async for frame in frames_out:
                        await send_websocket_json(websocket, frame)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("Stopped pushing list frames: %s", exc)
                task_group.cancel_scope.cancel()

        async def pump_actions(task_group) -> None:
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    text = message.get("text")
                    if text is None:
                        continue
                    try:
                        payload = json.loads(text)
                    except json.JSONDecodeError:
                        on_notice(Notice(message="Malformed message", category="error"))
                        continue
                    if not isinstance(payload, dict):
                        on_notice(Notice(message="Malformed message", category="error"))
                        continue
                    await handle_action(payload)
            except WebSocketDisconnect:
                pass
            finally:
                task_group.cancel_scope.cancel()

        logger.info("List screen opened for %s", session.account.email)
        try:
            async with frames_in:
                async with anyio.create_task_group() as task_group:
                    task_group.start_soon(screen.run)
                    task_group.start_soon(pump_frames, task_group)
                    task_group.start_soon(pump_actions, task_group)
        finally:
            logger.info("List screen closed for %s", session.account.email)
            if websocket.application_state != WebSocketState.DISCONNECTED:
                with suppress(Exception):
                    await websocket.close()

    return app


__all__ = ["create_app", "send_websocket_json"]
