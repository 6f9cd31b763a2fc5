"""State builders for per-match session snapshots."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_timestamp_ms(value: Any) -> int | None:
    """Coerce epoch numbers, numeric strings, ISO strings and datetimes to epoch ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        stamp = int(moment.timestamp() * 1000)
        return stamp if stamp > 0 else None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            numeric = float(text)
        except ValueError:
            numeric = None
        if numeric is not None:
            return int(numeric) if math.isfinite(numeric) and numeric > 0 else None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_timestamp_ms(parsed)
    return None


def to_non_negative_int(value: Any) -> int | None:
    """Return ``floor(value)`` for finite non-negative numbers, else ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value < 0:
        return None
    return int(math.floor(value))


def build_empty_turn_state() -> dict[str, Any]:
    return {
        "version": 1,
        "turnNumber": 0,
        "scheduledAt": 0,
        "deadline": 0,
        "durationSeconds": 0,
        "remainingSeconds": 0,
        "status": "",
        "dropInBonusSeconds": 0,
        "dropInBonusAppliedAt": 0,
        "dropInBonusTurn": 0,
        "source": "",
        "updatedAt": 0,
    }


def build_empty_session_meta() -> dict[str, Any]:
    return {
        "turnTimer": None,
        "vote": None,
        "dropIn": None,
        "asyncFill": None,
        "turnState": build_empty_turn_state(),
        "extras": None,
        "source": "",
        "updatedAt": 0,
    }


def build_empty_slot_template() -> dict[str, Any]:
    return {"slots": [], "roles": [], "version": 0, "source": "", "updatedAt": 0}


def build_empty_session_history() -> dict[str, Any]:
    return {
        "sessionId": None,
        "turns": [],
        "totalCount": 0,
        "publicCount": 0,
        "hiddenCount": 0,
        "suppressedCount": 0,
        "truncated": False,
        "lastIdx": None,
        "updatedAt": 0,
        "source": "",
        "diagnostics": None,
    }


def build_empty_match_state() -> dict[str, Any]:
    """Return the record kept per match id before anything has been stored."""
    return {
        "updatedAt": 0,
        "participation": {
            "roster": [],
            "participantPool": [],
            "realtimeMode": "off",
            "hostOwnerId": None,
            "hostRoleLimit": None,
            "updatedAt": 0,
        },
        "heroSelection": None,
        "matchSnapshot": None,
        "postCheck": None,
        "confirmation": None,
        "slotTemplate": build_empty_slot_template(),
        "sessionMeta": build_empty_session_meta(),
        "sessionHistory": build_empty_session_history(),
    }
