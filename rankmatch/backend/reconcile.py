"""Post-check of proposed match assignments against the authoritative participant roster.

Proposed assignments come from matchmaking and may be stale: a hero can be
seated twice, seated under a role its owner never registered for, or a role can
be over-filled. ``reconcile_assignments`` removes those occupants and rebuilds
the assignments and rooms from what survives.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from rankmatch.backend.models import ReconciliationResult, RemovedMember
from rankmatch.backend.participants import lookup_participant_role, normalize_id
from rankmatch.backend.roles import build_role_capacity_map, coerce_slot_index, known_role_names, normalize_role_name

logger = structlog.get_logger()

RosterLookup = Callable[[Any, list[str]], Awaitable[Mapping[str, Sequence[Any]]]]

_HERO_KEYS = ("heroId", "hero_id")
_OWNER_KEYS = ("ownerId", "owner_id", "heroOwnerId", "hero_owner_id")


@dataclass
class _MemberEntry:
    original_index: int
    assignment_index: int
    member_index: int
    declared_role: str
    fallback_roles: tuple[str, ...]
    owner_id: str | None
    hero_id: str | None
    expected_role: str = ""
    resolved_role: str = ""
    reason: str | None = None

    @property
    def removed(self) -> bool:
        return self.reason is not None


def _first_id(source: Mapping[str, Any] | None, keys: Iterable[str]) -> str | None:
    if not isinstance(source, Mapping):
        return None
    for key in keys:
        value = normalize_id(source.get(key))
        if value:
            return value
    return None


def _slot_occupant(slot: Mapping[str, Any]) -> dict[str, Any] | None:
    member = slot.get("member")
    if isinstance(member, Mapping):
        return dict(member)
    members = slot.get("members")
    if isinstance(members, list):
        for candidate in members:
            if isinstance(candidate, Mapping):
                return dict(candidate)
    hero_id = _first_id(slot, _HERO_KEYS)
    owner_id = _first_id(slot, _OWNER_KEYS)
    if hero_id or owner_id:
        return {"heroId": hero_id, "ownerId": owner_id}
    return None


def _role_slots(assignment: Mapping[str, Any]) -> list[Any]:
    slots = assignment.get("roleSlots")
    if slots is None:
        slots = assignment.get("role_slots")
    return slots if isinstance(slots, list) else []


def _slot_total(value: Any) -> int | None:
    total = coerce_slot_index(value)
    return total if total is not None and total >= 0 else None


def _recognize(name: str, fallbacks: Iterable[str], known: set[str]) -> str:
    for candidate in (name, *fallbacks):
        if candidate and (not known or candidate in known):
            return candidate
    return ""


def _flatten(assignments: list[dict[str, Any]]) -> list[_MemberEntry]:
    entries: list[_MemberEntry] = []
    for assignment_index, assignment in enumerate(assignments):
        assignment_role = normalize_role_name(assignment.get("role"))
        slots = _role_slots(assignment)
        if slots:
            for position, slot in enumerate(slots):
                if not isinstance(slot, Mapping):
                    continue
                occupant = _slot_occupant(slot)
                if occupant is None:
                    continue
                entries.append(
                    _MemberEntry(
                        original_index=len(entries),
                        assignment_index=assignment_index,
                        member_index=position,
                        declared_role=normalize_role_name(slot.get("role")) or assignment_role,
                        fallback_roles=(assignment_role,),
                        owner_id=_first_id(occupant, _OWNER_KEYS) or _first_id(slot, _OWNER_KEYS),
                        hero_id=_first_id(occupant, _HERO_KEYS) or _first_id(slot, _HERO_KEYS),
                    )
                )
            continue

        members = assignment.get("members")
        for position, member in enumerate(members if isinstance(members, list) else []):
            if not isinstance(member, Mapping):
                continue
            member_role = normalize_role_name(member.get("role"))
            entries.append(
                _MemberEntry(
                    original_index=len(entries),
                    assignment_index=assignment_index,
                    member_index=position,
                    declared_role=assignment_role or member_role,
                    fallback_roles=(member_role,),
                    owner_id=_first_id(member, _OWNER_KEYS),
                    hero_id=_first_id(member, _HERO_KEYS),
                )
            )
    return entries


async def _load_roster(
    lookup_roster: RosterLookup | None, game_id: Any, owner_ids: list[str]
) -> Mapping[str, Sequence[Any]]:
    if lookup_roster is None or not owner_ids:
        return {}
    try:
        roster = await lookup_roster(game_id, owner_ids)
    except Exception as error:
        logger.warning(
            "roster lookup failed, reconciling without roster",
            game_id=game_id,
            owner_count=len(owner_ids),
            error=repr(error),
        )
        return {}
    return roster if isinstance(roster, Mapping) else {}


def _resolve_hero_bucket(entries: list[_MemberEntry], roster: Mapping[str, Sequence[Any]], known: set[str]) -> None:
    for entry in entries:
        entry.expected_role = normalize_role_name(lookup_participant_role(roster, entry.owner_id, entry.hero_id))

    for entry in entries:
        if not entry.expected_role or not entry.declared_role:
            continue
        if known and entry.declared_role not in known:
            continue
        if entry.declared_role != entry.expected_role:
            entry.reason = "role_mismatch"

    exact = [entry for entry in entries if not entry.removed and entry.declared_role == entry.expected_role != ""]
    for entry in exact[1:]:
        entry.reason = "duplicate_role"

    survivors = [entry for entry in entries if not entry.removed]
    ambiguous = [entry for entry in survivors if not entry.expected_role]
    if len(survivors) > 1 and len(ambiguous) > 1:
        for entry in ambiguous[1:]:
            entry.reason = "duplicate_ambiguous"

    # An exact match and an ambiguous seat can both be left standing; a hero keeps one seat.
    survivors = [entry for entry in entries if not entry.removed]
    if len(survivors) > 1:
        keeper = next(
            (entry for entry in survivors if entry.expected_role and entry.declared_role == entry.expected_role),
            survivors[0],
        )
        for entry in survivors:
            if entry is not keeper:
                entry.reason = "duplicate_role" if entry.expected_role else "duplicate_ambiguous"


def _enforce_capacity(entries: list[_MemberEntry], capacity: Mapping[str, int]) -> None:
    seated: dict[str, int] = {}
    for entry in entries:
        if entry.removed:
            continue
        limit = capacity.get(entry.resolved_role)
        if limit is None:
            continue
        if seated.get(entry.resolved_role, 0) >= limit:
            entry.reason = "exceeds_capacity"
            continue
        seated[entry.resolved_role] = seated.get(entry.resolved_role, 0) + 1


def _strip_occupant_aliases(slot: dict[str, Any]) -> None:
    for key in ("hero_id", "owner_id", "hero_owner_id", "heroOwnerId"):
        slot.pop(key, None)


def _occupy(slot: dict[str, Any], occupant: dict[str, Any], hero_id: str | None, owner_id: str | None) -> None:
    _strip_occupant_aliases(slot)
    slot["member"] = occupant
    slot["members"] = [occupant]
    slot["heroId"] = hero_id
    slot["ownerId"] = owner_id
    slot["occupied"] = True


def _vacate(slot: dict[str, Any]) -> None:
    _strip_occupant_aliases(slot)
    slot["member"] = None
    slot["members"] = []
    slot["heroId"] = None
    slot["ownerId"] = None
    slot["occupied"] = False


def _single_recognized_role(roles: list[str], known: set[str]) -> str:
    if not roles:
        return ""
    if any(not role or (known and role not in known) for role in roles):
        return ""
    unique = set(roles)
    return roles[0] if len(unique) == 1 else ""


def _apply_totals(target: dict[str, Any], total: int, filled: int) -> None:
    filled = min(filled, total)
    target["filledSlots"] = filled
    target["missingSlots"] = max(0, total - filled)
    target["ready"] = total > 0 and target["missingSlots"] == 0


def _rebuild_slot_assignment(
    assignment: dict[str, Any],
    assignment_index: int,
    slots: list[Any],
    by_position: Mapping[tuple[int, int], _MemberEntry],
    known: set[str],
) -> None:
    assignment_role = normalize_role_name(assignment.get("role"))
    rebuilt: list[dict[str, Any]] = []
    for position, slot in enumerate(slots):
        if not isinstance(slot, Mapping):
            continue
        clone = dict(slot)
        slot_role = normalize_role_name(slot.get("role"))
        entry = by_position.get((assignment_index, position))
        occupant = _slot_occupant(slot)
        if entry is not None and not entry.removed and occupant is not None:
            _occupy(clone, occupant, entry.hero_id, entry.owner_id)
            clone["role"] = entry.resolved_role or slot_role
        else:
            _vacate(clone)
            clone["role"] = _recognize(slot_role, (assignment_role,), known) or slot_role
        rebuilt.append(clone)

    assignment.pop("role_slots", None)
    assignment["roleSlots"] = rebuilt
    assignment["members"] = [slot["member"] for slot in rebuilt if slot["occupied"]]

    total = _slot_total(assignment.get("slots"))
    if total is None:
        total = len(rebuilt)
    _apply_totals(assignment, total, sum(1 for slot in rebuilt if slot["occupied"]))

    unique_role = _single_recognized_role([slot["role"] for slot in rebuilt], known)
    if unique_role:
        assignment["role"] = unique_role


def _rebuild_member_assignment(
    assignment: dict[str, Any],
    assignment_index: int,
    by_position: Mapping[tuple[int, int], _MemberEntry],
    known: set[str],
) -> None:
    members = assignment.get("members")
    kept: list[dict[str, Any]] = []
    kept_roles: list[str] = []
    for position, member in enumerate(members if isinstance(members, list) else []):
        if not isinstance(member, Mapping):
            continue
        entry = by_position.get((assignment_index, position))
        if entry is None or entry.removed:
            continue
        clone = dict(member)
        if entry.resolved_role and (not known or entry.resolved_role in known):
            clone["role"] = entry.resolved_role
        kept.append(clone)
        kept_roles.append(entry.resolved_role)

    assignment["members"] = kept
    total = _slot_total(assignment.get("slots"))
    if total is None:
        total = len(kept)
    _apply_totals(assignment, total, len(kept))

    unique_role = _single_recognized_role(kept_roles, known)
    if unique_role:
        assignment["role"] = unique_role


def _rebuild_room(room: dict[str, Any], entries: list[_MemberEntry], known: set[str]) -> None:
    slots = room.get("slots")
    if not isinstance(slots, list):
        return

    seated_heroes = {entry.hero_id for entry in entries if entry.hero_id}
    survivors = {entry.hero_id: entry for entry in entries if entry.hero_id and not entry.removed}
    seen: set[str] = set()
    rebuilt: list[Any] = []
    for slot in slots:
        if not isinstance(slot, Mapping):
            rebuilt.append(slot)
            continue
        clone = dict(slot)
        slot_role = normalize_role_name(slot.get("role"))
        occupant = _slot_occupant(slot)
        hero_id = _first_id(occupant, _HERO_KEYS)
        owner_id = _first_id(occupant, _OWNER_KEYS)
        survivor = survivors.get(hero_id) if hero_id else None

        keep = occupant is not None
        if hero_id:
            if hero_id in seen:
                keep = False
            elif hero_id in seated_heroes and (
                survivor is None or slot_role not in {"", survivor.declared_role, survivor.resolved_role}
            ):
                keep = False

        if keep and occupant is not None:
            if hero_id:
                seen.add(hero_id)
            _occupy(clone, occupant, hero_id, owner_id)
            if survivor is not None and survivor.resolved_role:
                clone["role"] = survivor.resolved_role
            else:
                clone["role"] = _recognize(slot_role, (), known) or slot_role
        elif occupant is None and slot.get("occupied") is True:
            clone["occupied"] = True
        else:
            _vacate(clone)
        rebuilt.append(clone)

    room["slots"] = rebuilt
    total = _slot_total(room.get("totalSlots"))
    if total is None:
        total = len(rebuilt)
    filled = sum(1 for slot in rebuilt if isinstance(slot, Mapping) and slot.get("occupied"))
    _apply_totals(room, total, filled)


async def reconcile_assignments(
    game_id: Any,
    assignments: Iterable[Any] | None = None,
    rooms: Iterable[Any] | None = None,
    roles: Iterable[Any] | None = None,
    slot_layout: Iterable[Any] | None = None,
    lookup_roster: RosterLookup | None = None,
) -> ReconciliationResult:
    """Drop mismatched, duplicated and over-capacity occupants; return sanitized copies."""
    role_list = list(roles or [])
    layout = list(slot_layout or [])
    cloned_assignments = [copy.deepcopy(dict(item)) for item in assignments or [] if isinstance(item, Mapping)]
    cloned_rooms = [copy.deepcopy(dict(item)) for item in rooms or [] if isinstance(item, Mapping)]
    known = known_role_names(role_list, layout)

    entries = _flatten(cloned_assignments)
    owner_ids = list(dict.fromkeys(entry.owner_id for entry in entries if entry.owner_id))
    roster = await _load_roster(lookup_roster, game_id, owner_ids)

    buckets: dict[str, list[_MemberEntry]] = {}
    for entry in entries:
        if entry.hero_id:
            buckets.setdefault(entry.hero_id, []).append(entry)
    for bucket in buckets.values():
        _resolve_hero_bucket(bucket, roster, known)

    for entry in entries:
        if not entry.removed:
            entry.resolved_role = (
                entry.expected_role
                or _recognize(entry.declared_role, entry.fallback_roles, known)
                or entry.declared_role
            )

    _enforce_capacity(entries, build_role_capacity_map(role_list, layout))

    by_position = {(entry.assignment_index, entry.member_index): entry for entry in entries}
    for assignment_index, assignment in enumerate(cloned_assignments):
        slots = _role_slots(assignment)
        if slots:
            _rebuild_slot_assignment(assignment, assignment_index, slots, by_position, known)
        else:
            _rebuild_member_assignment(assignment, assignment_index, by_position, known)
    for room in cloned_rooms:
        _rebuild_room(room, entries, known)

    removed = [
        RemovedMember(hero_id=entry.hero_id, owner_id=entry.owner_id, role=entry.declared_role, reason=entry.reason)
        for entry in entries
        if entry.reason is not None
    ]
    if removed:
        logger.info("removed assignment occupants", game_id=game_id, removed=len(removed))
    return ReconciliationResult(assignments=cloned_assignments, rooms=cloned_rooms, removed_members=removed)
