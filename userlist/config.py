"""Configuration management for the realtime user list service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

import yaml


def _default_database_path() -> Path:
    return (Path(__file__).resolve().parent.parent / "data" / "userlist.sqlite3").resolve(strict=False)


def _resolve_path(raw: str, base_path: Path | None) -> Path:
    candidate = Path(raw).expanduser()
    if candidate.is_absolute() or base_path is None:
        return candidate.resolve(strict=False)
    return (base_path / candidate).resolve(strict=False)


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the web service and its collaborators."""

    database_path: Path
    session_secret: Optional[str] = None
    session_ttl_minutes: int = 60 * 24 * 7
    allowed_email_domain: Optional[str] = None
    strict_updates: bool = False
    require_auth: bool = True

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw dictionary data."""
        unknown = set(data.keys()) - {
            "database_path",
            "session_secret",
            "session_ttl_minutes",
            "allowed_email_domain",
            "strict_updates",
            "require_auth",
        }
        if unknown:
            raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        raw_db_path = data.get("database_path")
        database_path = (
            _resolve_path(str(raw_db_path), base_path) if raw_db_path else _default_database_path()
        )

        ttl = int(data.get("session_ttl_minutes", 60 * 24 * 7))
        if ttl <= 0:
            raise ValueError("session_ttl_minutes must be a positive integer")

        domain = data.get("allowed_email_domain")
        cleaned_domain = str(domain).strip().lstrip("@").lower() if domain else None

        return Settings(
            database_path=database_path,
            session_secret=str(data["session_secret"]) if data.get("session_secret") else None,
            session_ttl_minutes=ttl,
            allowed_email_domain=cleaned_domain or None,
            strict_updates=_as_bool(data.get("strict_updates", False)),
            require_auth=_as_bool(data.get("require_auth", True)),
        )


def load_settings(config_path: Path) -> Settings:
    """Load settings from a YAML file, applying environment overrides.

    A missing file is not an error; the defaults are used instead.
    """
    raw: Dict[str, object] = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        raw = loaded

    settings = Settings.from_dict(raw, base_path=config_path.parent)

    db_override = os.getenv("USERLIST_DB_PATH")
    if db_override:
        settings = replace(settings, database_path=_resolve_path(db_override, None))
    secret_override = os.getenv("USERLIST_SESSION_SECRET")
    if secret_override:
        settings = replace(settings, session_secret=secret_override)
    return settings


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "userlist.yaml").resolve(strict=False)


__all__ = ["Settings", "load_settings", "resolve_config_path"]
