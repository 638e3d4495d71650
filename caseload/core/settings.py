from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from caseload.core.env import load_env


DEFAULT_USER_DATA_DIR = Path.home() / ".caseload" / "data"

_ENVIRONMENTS = {"development", "production", "staging", "test"}


@dataclass(frozen=True)
class Settings:
    environment: str  # development, production, staging, test
    data_dir: Path
    log_level: str
    log_json: bool
    log_file: str
    backend_url: str
    backend_api_key: str
    backend_timeout_seconds: float
    redis_url: str
    stale_after_seconds: float
    cleanup_interval_seconds: float
    cleanup_autostart: bool
    token_cache_ttl_seconds: float
    token_session_ttl_seconds: float


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


load_env()


def _default_data_dir() -> Path:
    env_dir = os.getenv("DATA_DIR")
    if env_dir and env_dir.strip():
        return Path(env_dir).expanduser()
    return DEFAULT_USER_DATA_DIR


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    if environment not in _ENVIRONMENTS:
        environment = "development"

    data_dir = _default_data_dir()

    backend_url = os.getenv("BACKEND_URL", "").strip().rstrip("/")
    if environment == "production" and not backend_url:
        raise ValueError("BACKEND_URL must be set when ENVIRONMENT=production")
    backend_api_key = os.getenv("BACKEND_API_KEY", "").strip()
    backend_timeout_seconds = _get_float("BACKEND_TIMEOUT_SECONDS", 10.0, minimum=0.1)

    redis_url = os.getenv("REDIS_URL", "").strip()

    # Query freshness window (the UI's "staleTime").
    stale_after_seconds = _get_float("CACHE_STALE_AFTER_SECONDS", 300.0, minimum=0.0)

    cleanup_interval_seconds = _get_float("TOKEN_CLEANUP_INTERVAL_SECONDS", 3600.0, minimum=1.0)
    cleanup_autostart = _get_bool("TOKEN_CLEANUP_AUTOSTART", default=environment != "test")

    token_cache_ttl_seconds = _get_float("TOKEN_CACHE_TTL_SECONDS", 300.0, minimum=1.0)
    token_session_ttl_seconds = _get_float("TOKEN_SESSION_TTL_SECONDS", 1800.0, minimum=1.0)
    if token_session_ttl_seconds < token_cache_ttl_seconds:
        token_session_ttl_seconds = token_cache_ttl_seconds

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_json = _get_bool("LOG_JSON", default=False)
    log_file = os.getenv("LOG_FILE", "").strip()

    return Settings(
        environment=environment,
        data_dir=data_dir,
        log_level=log_level,
        log_json=log_json,
        log_file=log_file,
        backend_url=backend_url,
        backend_api_key=backend_api_key,
        backend_timeout_seconds=backend_timeout_seconds,
        redis_url=redis_url,
        stale_after_seconds=stale_after_seconds,
        cleanup_interval_seconds=cleanup_interval_seconds,
        cleanup_autostart=cleanup_autostart,
        token_cache_ttl_seconds=token_cache_ttl_seconds,
        token_session_ttl_seconds=token_session_ttl_seconds,
    )


__all__ = ["Settings", "get_settings"]
