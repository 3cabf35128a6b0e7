"""
Environment-driven configuration for the API and the CSV import pipeline.

Every knob has a default so a local checkout runs without any variables set.
Malformed values raise SettingsError at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///./pocketbook.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_PREVIEW_LIMIT = 100
DEFAULT_SESSION_TTL_SECONDS = 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
AMOUNT_MODES = frozenset({"signed", "positive"})


class SettingsError(RuntimeError):
    """Raised when configuration cannot be constructed from the environment."""


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    import_batch_size: int = DEFAULT_BATCH_SIZE
    import_max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    import_preview_limit: int = DEFAULT_PREVIEW_LIMIT
    import_amount_mode: str = "signed"
    import_session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    import_sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    log_level: str = "INFO"
    log_json: bool = True


def load_settings() -> Settings:
    """Build Settings from the process environment."""

    amount_mode = (os.getenv("IMPORT_AMOUNT_MODE") or "signed").strip().lower()
    if amount_mode not in AMOUNT_MODES:
        raise SettingsError(f"IMPORT_AMOUNT_MODE must be one of {sorted(AMOUNT_MODES)} (received '{amount_mode}')")

    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
        import_batch_size=_parse_positive_int("IMPORT_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        import_max_bytes=_parse_positive_int("IMPORT_MAX_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        import_preview_limit=_parse_positive_int("IMPORT_PREVIEW_LIMIT", DEFAULT_PREVIEW_LIMIT),
        import_amount_mode=amount_mode,
        import_session_ttl_seconds=_parse_positive_int("IMPORT_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS),
        import_sweep_interval_seconds=_parse_positive_int(
            "IMPORT_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
        ),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        log_json=_parse_bool(os.getenv("LOG_JSON"), default=True),
    )


def _parse_positive_int(env_key: str, default: int) -> int:
    raw_value: Optional[str] = os.getenv(env_key)
    if raw_value is None or raw_value.strip() == "":
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:
        raise SettingsError(f"{env_key} must be an integer (received '{raw_value}')") from exc
    if value <= 0:
        raise SettingsError(f"{env_key} must be greater than zero (received '{raw_value}')")
    return value


def _parse_bool(raw_value: Optional[str], default: bool) -> bool:
    if raw_value is None or raw_value.strip() == "":
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}
