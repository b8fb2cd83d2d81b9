"""Command-line interface for the realtime user list service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from datetime import timedelta
from getpass import getpass
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

from userlist.config import Settings, load_settings, resolve_config_path
from userlist.errors import AuthError
from userlist.identity import PASSWORD_MIN_LENGTH, IdentityProvider, SessionManager
from userlist.store import COLLECTION_ROOT, DocumentStore
from userlist.sync import snapshot_from_children

logger = logging.getLogger("userlist.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Realtime user list utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: USERLIST_CONFIG or config/userlist.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the database")
    subparsers.add_parser("list-records", help=f"Print the records in the {COLLECTION_ROOT} collection")
    account_parser = subparsers.add_parser("create-account", help="Register a sign-in account")
    account_parser.add_argument("email", help="Email address used to sign in")

    serve_parser = subparsers.add_parser("serve", help="Start the web interface")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "list-records", "create-account"}

    global_args: list[str] = []
    if args_list[:1] == ["--config"] and len(args_list) >= 2:
        global_args, args_list = args_list[:2], args_list[2:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*global_args, *args_list])
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args([*global_args, *args_list])
            args_list = ["serve", *args_list]

    return parser.parse_args([*global_args, *args_list])


def _load_settings(config: str | None) -> Settings:
    return load_settings(resolve_config_path(config or os.getenv("USERLIST_CONFIG")))


def _initialise(settings: Settings) -> tuple[DocumentStore, IdentityProvider]:
    store = DocumentStore(settings.database_path, require_auth=settings.require_auth)
    store.initialize()
    identity = IdentityProvider(
        settings.database_path,
        sessions=SessionManager(ttl=timedelta(minutes=settings.session_ttl_minutes)),
        allowed_email_domain=settings.allowed_email_domain,
    )
    identity.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return store, identity


def _serve(
    *,
    settings: Settings,
    store: DocumentStore,
    identity: IdentityProvider,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from userlist.web import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting user list on %s://%s:%s", protocol, host, port)

    try:
        app = create_app(settings=settings, store=store, identity=identity)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _list_records(store: DocumentStore) -> None:
    records = snapshot_from_children(store.children(COLLECTION_ROOT))
    if not records:
        print("No records are currently stored.")
        return

    print(f"{len(records)} record(s) found:")
    print(f"{'ID':<20}  {'Name':<24}  Email")
    print("-" * 80)
    for record in records:
        print(f"{record.id:<20}  {record.name:<24}  {record.email}")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {PASSWORD_MIN_LENGTH} characters): ")
        if len(password) < PASSWORD_MIN_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_account(identity: IdentityProvider, email: str) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating account.")
        return 1

    try:
        session = identity.sign_up(email, password, password)
    except AuthError as exc:
        print(f"Failed to create account: {exc}")
        return 1

    identity.sign_out(session.token)
    print(f"Created account #{session.account.id}: {session.account.email}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config)
    store, identity = _initialise(settings)

    if args.command == "serve":
        _serve(
            settings=settings,
            store=store,
            identity=identity,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "list-records":
        _list_records(store)
    elif args.command == "create-account":
        return _create_account(identity, args.email)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
