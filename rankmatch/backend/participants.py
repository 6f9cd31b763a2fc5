"""Roster and queue row normalisation into canonical participant records."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from rankmatch.backend.models import DEFAULT_PARTICIPANT_SCORE, ParticipantRecord
from rankmatch.backend.state import to_timestamp_ms


INELIGIBLE_POOL_STATUSES = frozenset(
    {"defeated", "lost", "out", "retired", "eliminated", "dead", "victory", "locked"}
)

_MISSING = object()


def normalize_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Mapping):
        return normalize_id(value.get("id"))
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def normalize_role_label(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def normalize_role_key(value: Any) -> str:
    return normalize_role_label(value).lower()


def _first_present(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _parse_slot_index(row: Mapping[str, Any]) -> Any:
    raw = _first_present(row, "slot_index", "slotIndex", "slot_no", "slotNo")
    if raw is None:
        return None
    if isinstance(raw, bool):
        return _MISSING
    try:
        numeric = float(raw)
    except (TypeError, ValueError):
        return _MISSING
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return _MISSING
    return int(numeric)


def _parse_score(value: Any) -> int:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PARTICIPANT_SCORE
    if numeric != numeric or numeric <= 0 or numeric == float("inf"):
        return DEFAULT_PARTICIPANT_SCORE
    return int(numeric)


def _parse_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return None
    return int(numeric)


def _alternate_hero_ids(row: Mapping[str, Any]) -> tuple[str, ...]:
    raw = _first_present(row, "hero_ids", "heroIds")
    if not isinstance(raw, (list, tuple)):
        return ()
    ids: list[str] = []
    for value in raw:
        hero_id = normalize_id(value)
        if hero_id and hero_id not in ids:
            ids.append(hero_id)
    return tuple(ids)


def resolve_participant_hero_id(row: Mapping[str, Any]) -> str | None:
    """Direct hero id, then nested hero object id, then the first alternate hero id."""
    direct = normalize_id(_first_present(row, "hero_id", "heroId", "heroID"))
    if direct:
        return direct
    hero = row.get("hero")
    if isinstance(hero, Mapping):
        nested = normalize_id(hero.get("id"))
        if nested:
            return nested
    alternates = _alternate_hero_ids(row)
    return alternates[0] if alternates else None


def normalize_participant_row(row: Any) -> ParticipantRecord | None:
    if not isinstance(row, Mapping):
        return None
    owner_id = normalize_id(_first_present(row, "owner_id", "ownerId", "ownerID"))
    if not owner_id:
        return None
    slot_index = _parse_slot_index(row)
    if slot_index is _MISSING:
        return None

    updated_at = to_timestamp_ms(_first_present(row, "updated_at", "updatedAt"))
    if updated_at is None:
        updated_at = to_timestamp_ms(_first_present(row, "created_at", "createdAt"))

    status = row.get("status")
    return ParticipantRecord(
        owner_id=owner_id,
        hero_id=resolve_participant_hero_id(row),
        hero_ids=_alternate_hero_ids(row),
        role=normalize_role_label(_first_present(row, "role", "role_name", "roleName")),
        score=_parse_score(row.get("score")),
        rating=_parse_optional_int(row.get("rating")),
        slot_index=slot_index,
        status=status.strip().lower() if isinstance(status, str) else "",
        updated_at=updated_at or 0,
    )


def _recency_key(record: ParticipantRecord) -> tuple[int, int]:
    slot_index = record.slot_index if record.slot_index is not None else -1
    return (-record.updated_at, -slot_index)


def normalize_participant_rows(rows: Iterable[Any] | None) -> dict[str, list[ParticipantRecord]]:
    """Index roster rows by owner id, most recently updated record first."""
    index: dict[str, list[ParticipantRecord]] = {}
    for row in rows or []:
        record = normalize_participant_row(row)
        if record is None:
            continue
        index.setdefault(record.owner_id, []).append(record)
    for owner_id, records in index.items():
        index[owner_id] = sorted(records, key=_recency_key)
    return index


def _record_field(record: Any, attribute: str, *keys: str) -> Any:
    if isinstance(record, ParticipantRecord):
        return getattr(record, attribute)
    if isinstance(record, Mapping):
        return _first_present(record, *keys)
    return None


def _record_hero_ids(record: Any) -> tuple[str, ...]:
    if isinstance(record, ParticipantRecord):
        return record.hero_ids
    if isinstance(record, Mapping):
        return _alternate_hero_ids(record)
    return ()


def lookup_participant_role(
    roster: Mapping[str, Sequence[Any]] | None,
    owner_id: str | None,
    hero_id: str | None,
) -> str:
    """Return the role the roster records for an (owner, hero) pair, or ``""``."""
    if not owner_id or not hero_id or not isinstance(roster, Mapping):
        return ""
    entries = roster.get(str(owner_id)) or []
    for entry in entries:
        if entry is None:
            continue
        entry_hero = normalize_id(_record_field(entry, "hero_id", "hero_id", "heroId"))
        if entry_hero == hero_id or hero_id in _record_hero_ids(entry):
            return normalize_role_label(_record_field(entry, "role", "role", "roleName"))
    return ""


def guess_owner_participant(
    owner_id: str | None,
    roster: Mapping[str, Sequence[ParticipantRecord]] | None,
    role_preference: str | None = None,
    fallback_hero_id: str | None = None,
) -> ParticipantRecord:
    owner_key = normalize_id(owner_id) or ""
    preferred_role = normalize_role_label(role_preference)
    records = list((roster or {}).get(owner_key) or []) if owner_key else []

    if records:
        if preferred_role:
            for record in records:
                if record.role == preferred_role and record.hero_id:
                    return record
        for record in records:
            if record.hero_id:
                return record
        return records[0]

    explicit_hero = normalize_id(fallback_hero_id)
    return ParticipantRecord(
        owner_id=owner_key,
        hero_id=explicit_hero,
        role=preferred_role,
        score=DEFAULT_PARTICIPANT_SCORE,
        source="explicit" if explicit_hero else "fallback",
    )


def sanitize_participant_candidate(entry: Any, fallback_role: str | None = None) -> dict[str, Any] | None:
    if not isinstance(entry, Mapping):
        return None
    owner_id = normalize_id(_first_present(entry, "ownerId", "owner_id", "ownerID"))
    if not owner_id:
        return None
    role = normalize_role_label(_first_present(entry, "role", "roleName", "role_label")) or normalize_role_label(
        fallback_role
    )
    hero_name = _first_present(entry, "heroName", "hero_name")
    return {
        "ownerId": owner_id,
        "role": role,
        "roleKey": role.lower(),
        "heroId": resolve_participant_hero_id(entry),
        "heroName": hero_name if isinstance(hero_name, str) else "",
        "score": _parse_optional_int(entry.get("score")),
        "rating": _parse_optional_int(entry.get("rating")),
    }


def sanitize_participant_pool(pool: Iterable[Any] | None, fallback_role: str | None = None) -> list[dict[str, Any]]:
    seen: set[str] = set()
    candidates: list[dict[str, Any]] = []
    for entry in pool or []:
        candidate = sanitize_participant_candidate(entry, fallback_role)
        if candidate is None or candidate["ownerId"] in seen:
            continue
        seen.add(candidate["ownerId"])
        candidates.append(candidate)
    return candidates


def filter_eligible_pool_rows(rows: Iterable[Any] | None) -> list[dict[str, Any]]:
    """Keep waiting-pool rows that still have a role, a hero and a playable status."""
    eligible: list[dict[str, Any]] = []
    for row in rows or []:
        if not isinstance(row, Mapping):
            continue
        status = row.get("status")
        status_key = status.strip().lower() if isinstance(status, str) else ""
        if status_key in INELIGIBLE_POOL_STATUSES:
            continue
        if not normalize_role_label(_first_present(row, "role", "role_name", "roleName")):
            continue
        if not resolve_participant_hero_id(row):
            continue
        eligible.append(dict(row))
    return eligible
