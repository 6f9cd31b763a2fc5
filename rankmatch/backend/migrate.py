"""Create the match session table and optionally purge sessions past their TTL."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

import structlog

from rankmatch.backend.config import load_settings

logger = structlog.get_logger()


def load_schema_sql() -> str:
    return Path(__file__).with_name("db_schema.sql").read_text(encoding="utf-8")


def purge_expired_sessions(conn: Any, ttl_seconds: int) -> int:
    """Delete persisted sessions not written within ``ttl_seconds``; return how many went."""
    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM match_sessions WHERE updated_at < now() - make_interval(secs => %s)",
            (ttl_seconds,),
        )
        return max(cur.rowcount, 0)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply the rank match schema.")
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="Also delete sessions older than RANKMATCH_SESSION_TTL_SECONDS.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings()
    if not settings.database_url:
        raise RuntimeError("RANKMATCH_DATABASE_URL is required for migration")

    import psycopg

    with psycopg.connect(settings.database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(load_schema_sql())
        if args.purge_expired:
            purged = purge_expired_sessions(conn, settings.session_ttl_seconds)
            logger.info("purged expired match sessions", count=purged, ttl_seconds=settings.session_ttl_seconds)
        conn.commit()


if __name__ == "__main__":
    main()
