from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - PERSISTENCE_BACKEND: 'memory' (default) or 'sqlite'
    - SQLITE_DB_PATH: path to the sqlite file backing the durable memory. Default './data/tasks.db'
    - MEMORY_MAX_PAGES: optional capacity of the flat memory, in 64 KiB pages (unlimited by default)
    - BUCKET_SIZE_IN_PAGES: pages per region bucket for newly created memories (default 128)
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - ENABLE_BASIC_AUTH: 'true' to take the caller identity from HTTP Basic Auth (default: false)
    - BASIC_AUTH_USERNAME: username for basic auth (required when ENABLE_BASIC_AUTH=true)
    - BASIC_AUTH_PASSWORD: password for basic auth (required when ENABLE_BASIC_AUTH=true)
    - LOG_LEVEL: logging level name (default: INFO)
    """

    persistence_backend: str
    sqlite_db_path: str
    memory_max_pages: Optional[int]
    bucket_size_in_pages: int
    cors_allow_origins: List[str]
    enable_basic_auth: bool
    basic_auth_username: Optional[str]
    basic_auth_password: Optional[str]
    log_level: int


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_bool(value: str, default: bool = False) -> bool:
    v = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_positive_int(value: str, default: Optional[int]) -> Optional[int]:
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


def _parse_log_level(value: str) -> int:
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else logging.INFO


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "sqlite"}:
        # Fallback to memory if unsupported
        backend = "memory"

    sqlite_path = _get_env("SQLITE_DB_PATH", "./data/tasks.db").strip()
    max_pages = _parse_positive_int(_get_env("MEMORY_MAX_PAGES", ""), None)
    bucket_size = _parse_positive_int(_get_env("BUCKET_SIZE_IN_PAGES", "128"), 128)
    origins = _parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*"))

    enable_basic_auth = _parse_bool(_get_env("ENABLE_BASIC_AUTH", "false"), False)
    basic_user = os.getenv("BASIC_AUTH_USERNAME") if enable_basic_auth else None
    basic_pass = os.getenv("BASIC_AUTH_PASSWORD") if enable_basic_auth else None

    return Settings(
        persistence_backend=backend,
        sqlite_db_path=sqlite_path,
        memory_max_pages=max_pages,
        bucket_size_in_pages=bucket_size or 128,
        cors_allow_origins=origins,
        enable_basic_auth=enable_basic_auth,
        basic_auth_username=basic_user,
        basic_auth_password=basic_pass,
        log_level=_parse_log_level(_get_env("LOG_LEVEL", "INFO")),
    )
