"""Sanitisers for the slot template, session history and hand-off subtrees of a match record."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

import structlog

from rankmatch.backend.models import RoleResolution
from rankmatch.backend.participants import normalize_id
from rankmatch.backend.roles import build_layout_from_slot_rows, build_roles_from_role_rows, coerce_slot_index
from rankmatch.backend.state import (
    build_empty_session_history,
    build_empty_slot_template,
    now_ms,
    to_non_negative_int,
    to_timestamp_ms,
)

logger = structlog.get_logger()

MAX_HISTORY_TURNS = 200

_HISTORY_COUNTERS = ("totalCount", "publicCount", "hiddenCount", "suppressedCount")


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _sanitize_template_slots(rows: Any) -> list[dict[str, Any]]:
    if not isinstance(rows, list):
        return []
    ready: set[int] = set()
    for row in rows:
        if isinstance(row, Mapping) and (row.get("ready") is True or row.get("occupant_ready") is True):
            index = coerce_slot_index(row.get("slotIndex", row.get("slot_index")))
            if index is not None:
                ready.add(index)
    return [{**slot.to_dict(), "ready": slot.slot_index in ready} for slot in build_layout_from_slot_rows(rows)]


def sanitize_slot_template(payload: Any, previous: Any = None, now: int | None = None) -> dict[str, Any]:
    """Merge ``payload`` over ``previous``; ``None`` resets the template."""
    stamp = now if now is not None else now_ms()
    if payload is None:
        return {**build_empty_slot_template(), "updatedAt": stamp}

    base = copy.deepcopy(previous) if isinstance(previous, Mapping) else {}
    template = {**build_empty_slot_template(), **base, "updatedAt": 0}
    if isinstance(payload, Mapping):
        if "slots" in payload:
            template["slots"] = _sanitize_template_slots(payload["slots"])
        if "roles" in payload:
            roles = payload["roles"] if isinstance(payload["roles"], list) else []
            template["roles"] = [role.to_dict() for role in build_roles_from_role_rows(roles)]
        if "version" in payload:
            version = to_non_negative_int(payload["version"])
            if version is not None:
                template["version"] = version
        if "source" in payload:
            template["source"] = _clean_text(payload["source"]) or template["source"]
        if "updatedAt" in payload:
            template["updatedAt"] = to_timestamp_ms(payload["updatedAt"]) or 0
    if not template["updatedAt"]:
        template["updatedAt"] = stamp
    return template


def slot_template_from_resolution(
    resolution: RoleResolution, previous: Any = None, source: str = "", now: int | None = None
) -> dict[str, Any]:
    version = (to_non_negative_int(previous.get("version")) or 0) + 1 if isinstance(previous, Mapping) else 1
    return sanitize_slot_template(
        {
            "slots": [slot.to_dict() for slot in resolution.slot_layout],
            "roles": [role.to_dict() for role in resolution.roles],
            "version": version,
            "source": source,
        },
        previous,
        now=now,
    )


def sanitize_history_turn(turn: Any, index: int) -> dict[str, Any] | None:
    if not isinstance(turn, Mapping):
        return None
    idx = coerce_slot_index(turn.get("idx"))
    summary = turn.get("summaryPayload") or turn.get("summary_payload")
    if summary is None and isinstance(turn.get("summary"), Mapping):
        summary = turn["summary"]
    metadata = turn.get("metadata")
    return {
        "id": normalize_id(turn.get("id") if turn.get("id") is not None else turn.get("turn_id")),
        "idx": idx if idx is not None else index,
        "role": _clean_text(turn.get("role")) or "system",
        "content": turn.get("content") if isinstance(turn.get("content"), str) else "",
        "public": turn.get("public") is not False,
        "isVisible": turn.get("isVisible") is not False and turn.get("is_visible") is not False,
        "createdAt": turn.get("createdAt") or turn.get("created_at") or None,
        "summaryPayload": copy.deepcopy(summary) if summary is not None else None,
        "metadata": copy.deepcopy(dict(metadata)) if isinstance(metadata, Mapping) else None,
    }


def sanitize_history_turns(turns: Any, limit: int = MAX_HISTORY_TURNS) -> tuple[list[dict[str, Any]], bool]:
    """Normalise turns, drop repeated ``(idx, role)`` pairs and keep the newest ``limit``.

    Returns the turns and whether older ones were cut off.
    """
    if not isinstance(turns, list):
        return [], False
    seen: set[tuple[int, str]] = set()
    kept: list[dict[str, Any]] = []
    for index, raw in enumerate(turns):
        turn = sanitize_history_turn(raw, index)
        if turn is None:
            continue
        key = (turn["idx"], turn["role"])
        if key in seen:
            logger.warning("duplicate history turn dropped", idx=turn["idx"], role=turn["role"])
            continue
        seen.add(key)
        kept.append(turn)
    if len(kept) > limit:
        return kept[len(kept) - limit :], True
    return kept, False


def sanitize_session_history(patch: Any, previous: Any = None, now: int | None = None) -> dict[str, Any]:
    """Merge ``patch`` over ``previous``; ``None`` resets the history."""
    stamp = now if now is not None else now_ms()
    if patch is None:
        return {**build_empty_session_history(), "updatedAt": stamp}

    base = copy.deepcopy(previous) if isinstance(previous, Mapping) else {}
    history = {**build_empty_session_history(), **base, "updatedAt": 0}
    if isinstance(patch, Mapping):
        if "sessionId" in patch:
            history["sessionId"] = normalize_id(patch["sessionId"])
        capped = False
        if "turns" in patch:
            history["turns"], capped = sanitize_history_turns(patch["turns"])
        for key in _HISTORY_COUNTERS:
            if key in patch:
                history[key] = to_non_negative_int(patch[key]) or 0
        if "truncated" in patch:
            history["truncated"] = bool(patch["truncated"])
        history["truncated"] = history["truncated"] or capped
        if "lastIdx" in patch:
            history["lastIdx"] = coerce_slot_index(patch["lastIdx"])
        if "updatedAt" in patch:
            history["updatedAt"] = to_timestamp_ms(patch["updatedAt"]) or 0
        if "source" in patch:
            history["source"] = _clean_text(patch["source"]) or history["source"]
        if "diagnostics" in patch:
            history["diagnostics"] = copy.deepcopy(patch["diagnostics"])
    if not history["updatedAt"]:
        history["updatedAt"] = stamp
    return history


def build_hero_selection(
    hero_id: Any,
    viewer_id: Any = None,
    owner_id: Any = None,
    role: Any = None,
    hero_meta: Any = None,
    now: int | None = None,
) -> dict[str, Any]:
    viewer = normalize_id(viewer_id)
    return {
        "heroId": normalize_id(hero_id),
        "viewerId": viewer,
        "ownerId": normalize_id(owner_id) or viewer,
        "role": _clean_text(role),
        "heroMeta": copy.deepcopy(hero_meta),
        "updatedAt": now if now is not None else now_ms(),
    }


def build_match_snapshot(payload: Mapping[str, Any] | None, now: int | None = None) -> dict[str, Any]:
    payload = payload or {}
    return {
        "match": copy.deepcopy(payload.get("match")) or None,
        "pendingMatch": copy.deepcopy(payload.get("pendingMatch")) or None,
        "viewerId": normalize_id(payload.get("viewerId")),
        "heroId": normalize_id(payload.get("heroId")),
        "role": _clean_text(payload.get("role")),
        "mode": _clean_text(payload.get("mode")),
        "createdAt": to_timestamp_ms(payload.get("createdAt")) or (now if now is not None else now_ms()),
    }
