from __future__ import annotations

import os
from dataclasses import dataclass


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str

    # API surface toggles
    enable_docs: bool
    enable_admin_routes: bool

    # Safety limits
    max_batch_size: int

    host: str
    port: int


def load_settings() -> Settings:
    app_env = (os.getenv("APP_ENV", "dev").strip() or "dev").lower()

    log_format = os.getenv("COLLECTOR_LOG_FORMAT", "text").strip().lower() or "text"
    if log_format not in {"text", "json"}:
        raise RuntimeError("COLLECTOR_LOG_FORMAT must be one of: text, json")

    max_batch_size = _get_int("COLLECTOR_MAX_BATCH_SIZE", 500)
    if max_batch_size <= 0:
        raise RuntimeError("COLLECTOR_MAX_BATCH_SIZE must be > 0")

    return Settings(
        app_env=app_env,
        log_level=os.getenv("COLLECTOR_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_format=log_format,
        enable_docs=_get_bool("ENABLE_DOCS", app_env == "dev"),
        # Admin routes drive shifts on the development collector.
        enable_admin_routes=_get_bool("ENABLE_ADMIN_ROUTES", True),
        max_batch_size=max_batch_size,
        host=os.getenv("COLLECTOR_HOST", "127.0.0.1").strip() or "127.0.0.1",
        port=_get_int("COLLECTOR_PORT", 8090),
    )


settings = load_settings()
