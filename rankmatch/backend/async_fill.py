"""Host-role seat limits and fill queues for asynchronous (non-realtime) matches."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from rankmatch.backend.models import AsyncFillSnapshot, ParticipantRecord, SeatLimit
from rankmatch.backend.participants import (
    normalize_id,
    normalize_role_key,
    normalize_role_label,
    resolve_participant_hero_id,
    sanitize_participant_pool,
)
from rankmatch.backend.roles import coerce_slot_index
from rankmatch.backend.state import now_ms, to_non_negative_int


UNASSIGNED_ROLE = "unassigned"
DEFAULT_HOST_SEAT_CAP = 3
REALTIME_MODES = ("off", "standard", "pulse")


def normalize_realtime_mode(value: Any) -> str:
    if value is True:
        return "standard"
    if value is None or value is False:
        return "off"
    if isinstance(value, str):
        key = value.strip().lower()
        if key in REALTIME_MODES:
            return key
    return "off"


def _lookup(entry: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def _roster_seats(roster: Iterable[Any] | None) -> list[dict[str, Any]]:
    seats: list[dict[str, Any]] = []
    for position, entry in enumerate(roster or []):
        if isinstance(entry, ParticipantRecord):
            entry = entry.to_dict()
        if not isinstance(entry, Mapping):
            continue
        raw_index = _lookup(entry, "slotIndex", "slot_index", "slotNo", "slot_no")
        if raw_index is None:
            slot_index = position
        else:
            slot_index = coerce_slot_index(raw_index)
            if slot_index is None:
                continue
        hero_name = _lookup(entry, "heroName", "hero_name")
        seats.append(
            {
                "slotIndex": slot_index,
                "role": normalize_role_label(_lookup(entry, "role", "roleName", "role_name")) or UNASSIGNED_ROLE,
                "ownerId": normalize_id(_lookup(entry, "ownerId", "owner_id", "ownerID")),
                "heroId": resolve_participant_hero_id(entry),
                "heroName": hero_name if isinstance(hero_name, str) else "",
            }
        )
    return sorted(seats, key=lambda seat: seat["slotIndex"])


def _resolve_host_role(seats: list[dict[str, Any]], host_owner_id: str | None, host_role: Any) -> str:
    explicit = normalize_role_label(host_role)
    if explicit:
        return explicit
    if host_owner_id:
        for seat in seats:
            if seat["ownerId"] == host_owner_id:
                return seat["role"]
    if seats:
        return seats[0]["role"]
    return UNASSIGNED_ROLE


def _allowed_seats(total: int, host_role_limit: Any) -> int:
    limit = to_non_negative_int(host_role_limit)
    if total <= 0:
        return 0
    if limit is None:
        return min(total, DEFAULT_HOST_SEAT_CAP)
    return max(1, min(limit, total))


def build_async_fill_snapshot(
    roster: Iterable[Any] | None,
    participant_pool: Iterable[Any] | None,
    realtime_mode: Any,
    host_owner_id: Any = None,
    host_role_limit: Any = None,
    host_role: Any = None,
    now: int | None = None,
) -> AsyncFillSnapshot | None:
    """Pick the host-role seats an async match fills and who queues for the empty ones.

    Returns ``None`` for realtime matches. The result depends only on the inputs
    and ``now``; candidates are ordered by owner id.
    """
    mode = normalize_realtime_mode(realtime_mode)
    if mode != "off":
        return None

    generated_at = now if now is not None else now_ms()
    host_owner = normalize_id(host_owner_id)
    seats = _roster_seats(roster)
    if not seats:
        return AsyncFillSnapshot(
            mode=mode,
            host_owner_id=host_owner,
            host_role=None,
            seat_limit=SeatLimit(allowed=0, total=0),
            seat_indexes=[],
            pending_seat_indexes=[],
            assigned=[],
            overflow=[],
            fill_queue=[],
            pool_size=0,
            generated_at=generated_at,
        )

    resolved_role = _resolve_host_role(seats, host_owner, host_role)
    role_key = normalize_role_key(resolved_role)
    host_seats = [seat for seat in seats if normalize_role_key(seat["role"]) == role_key]
    total = len(host_seats)
    allowed = _allowed_seats(total, host_role_limit)

    assigned = host_seats[:allowed]
    overflow = host_seats[allowed:]
    pending = [seat["slotIndex"] for seat in assigned if not seat["ownerId"]]
    seated_owners = {seat["ownerId"] for seat in assigned if seat["ownerId"]}

    candidates = [
        candidate
        for candidate in sanitize_participant_pool(participant_pool, fallback_role=resolved_role)
        if candidate["roleKey"] == role_key and candidate["ownerId"] not in seated_owners
    ]
    candidates.sort(key=lambda candidate: candidate["ownerId"])

    return AsyncFillSnapshot(
        mode=mode,
        host_owner_id=host_owner,
        host_role=resolved_role,
        seat_limit=SeatLimit(allowed=allowed, total=total),
        seat_indexes=[seat["slotIndex"] for seat in assigned],
        pending_seat_indexes=pending,
        assigned=assigned,
        overflow=overflow,
        fill_queue=candidates[: len(pending)],
        pool_size=len(candidates),
        generated_at=generated_at,
    )
