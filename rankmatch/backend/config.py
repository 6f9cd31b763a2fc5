"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 6
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 5
DEFAULT_TURN_TIMER_SECONDS = 60


@dataclass(frozen=True)
class LobbySettings:
    database_url: str | None
    host: str
    port: int
    session_ttl_seconds: int
    cleanup_interval_seconds: int
    meta_sync_url: str | None
    meta_sync_token: str | None
    default_turn_timer_seconds: int


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def load_settings() -> LobbySettings:
    return LobbySettings(
        database_url=os.getenv("RANKMATCH_DATABASE_URL"),
        host=os.getenv("RANKMATCH_HOST", "127.0.0.1"),
        port=_int_env("RANKMATCH_PORT", 8000),
        session_ttl_seconds=_int_env("RANKMATCH_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS),
        cleanup_interval_seconds=_int_env("RANKMATCH_CLEANUP_INTERVAL_SECONDS", DEFAULT_CLEANUP_INTERVAL_SECONDS),
        meta_sync_url=os.getenv("RANKMATCH_META_SYNC_URL"),
        meta_sync_token=os.getenv("RANKMATCH_META_SYNC_TOKEN"),
        default_turn_timer_seconds=_int_env("RANKMATCH_DEFAULT_TURN_TIMER_SECONDS", DEFAULT_TURN_TIMER_SECONDS),
    )
