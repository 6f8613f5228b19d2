from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict

ALLOWED_DRIVERS = {"sqlite"}

_ENV_PREFIX = "GRIDCRUD_"


@dataclass
class DbConfig:
    driver: str = "sqlite"
    database: str = "gridcrud.db"
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "DbConfig":
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ValueError("db must be an object")
        driver = str(raw.get("driver") or "sqlite").lower()
        if driver not in ALLOWED_DRIVERS:
            raise ValueError(f"Unsupported database driver: {driver!r} (allowed: {sorted(ALLOWED_DRIVERS)})")
        database = raw.get("database") or raw.get("path") or "gridcrud.db"
        if not isinstance(database, str):
            raise ValueError("db.database must be a string")
        options = raw.get("options") or {}
        if not isinstance(options, dict):
            raise ValueError("db.options must be an object")
        return cls(driver=driver, database=database, options=dict(options))

    def to_dict(self) -> Dict[str, Any]:
        return {"driver": self.driver, "database": self.database, "options": dict(self.options)}


@dataclass
class Settings:
    secret_key: str = ""
    upload_dir: str = "uploads"
    upload_url: str = "/uploads"
    max_body_bytes: int = 32 * 1024 * 1024
    rate_limit: int = 240
    max_export_rows: int = 50000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # Tokens signed with a generated key only verify inside this process.
        if not self.secret_key:
            self.secret_key = secrets.token_urlsafe(32)

    @classmethod
    def from_env(cls, environ: Dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _get(name: str, default: str) -> str:
            return env.get(_ENV_PREFIX + name, default)

        def _get_int(name: str, default: int) -> int:
            raw = env.get(_ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ValueError(f"{_ENV_PREFIX}{name} must be an integer: {raw!r}") from exc

        return cls(
            secret_key=_get("SECRET_KEY", ""),
            upload_dir=_get("UPLOAD_DIR", "uploads"),
            upload_url=_get("UPLOAD_URL", "/uploads"),
            max_body_bytes=_get_int("MAX_BODY_BYTES", 32 * 1024 * 1024),
            rate_limit=_get_int("RATE_LIMIT", 240),
            max_export_rows=_get_int("MAX_EXPORT_ROWS", 50000),
            log_level=_get("LOG_LEVEL", "INFO").upper(),
        )


_default_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide fallback settings for callers that do not inject their own."""
    global _default_settings
    if _default_settings is None:
        _default_settings = Settings.from_env()
    return _default_settings


def set_settings(settings: Settings | None) -> None:
    global _default_settings
    _default_settings = settings
