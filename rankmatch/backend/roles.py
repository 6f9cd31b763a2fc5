"""Role capacity resolution from inline role lists, slot rows and role declarations."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from rankmatch.backend.models import RoleDeclaration, RoleResolution, SlotLayoutEntry
from rankmatch.backend.participants import normalize_id


def normalize_role_name(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def coerce_slot_index(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return None
    return int(numeric)


def coerce_slot_count(value: Any) -> int:
    index = coerce_slot_index(value)
    if index is None or index < 0:
        return 0
    return index


def _role_of(entry: Any) -> str:
    if isinstance(entry, RoleDeclaration):
        return normalize_role_name(entry.name)
    if isinstance(entry, SlotLayoutEntry):
        return normalize_role_name(entry.role)
    if isinstance(entry, Mapping):
        return normalize_role_name(entry.get("name") or entry.get("role") or entry.get("label") or "")
    if isinstance(entry, str):
        return normalize_role_name(entry)
    return ""


def derive_inline_layout(inline_slots: Iterable[Any] | None) -> list[SlotLayoutEntry]:
    """One seat per position; positions without a role name are skipped but keep their index."""
    layout: list[SlotLayoutEntry] = []
    for index, value in enumerate(inline_slots or []):
        name = _role_of(value)
        if not name:
            continue
        layout.append(SlotLayoutEntry(slot_index=index, role=name))
    return layout


def build_layout_from_slot_rows(slot_rows: Iterable[Any] | None) -> list[SlotLayoutEntry]:
    layout: list[SlotLayoutEntry] = []
    for row in slot_rows or []:
        if isinstance(row, SlotLayoutEntry):
            if normalize_role_name(row.role) and row.slot_index >= 0:
                layout.append(row)
            continue
        if not isinstance(row, Mapping) or row.get("active") is False:
            continue
        role = normalize_role_name(row.get("role"))
        if not role:
            continue
        raw_index = next(
            (row[key] for key in ("slot_index", "slotIndex", "slot_no", "slotNo") if row.get(key) is not None),
            None,
        )
        slot_index = coerce_slot_index(raw_index)
        if slot_index is None or slot_index < 0:
            continue
        layout.append(
            SlotLayoutEntry(
                slot_index=slot_index,
                role=role,
                hero_id=normalize_id(row.get("hero_id") or row.get("heroId")),
                owner_id=normalize_id(
                    row.get("hero_owner_id") or row.get("heroOwnerId") or row.get("owner_id") or row.get("ownerId")
                ),
            )
        )
    return sorted(layout, key=lambda slot: slot.slot_index)


def build_roles_from_role_rows(role_rows: Iterable[Any] | None) -> list[RoleDeclaration]:
    """Active declarations with a positive count; duplicate names are summed in first-seen order."""
    totals: dict[str, int] = {}
    for row in role_rows or []:
        if isinstance(row, RoleDeclaration):
            name, count = normalize_role_name(row.name), row.slot_count
        elif isinstance(row, Mapping):
            if row.get("active") is False:
                continue
            name = normalize_role_name(row.get("name") or row.get("role"))
            raw_count = next(
                (row[key] for key in ("slot_count", "slotCount", "capacity") if row.get(key) is not None),
                None,
            )
            count = coerce_slot_count(raw_count)
        else:
            continue
        if not name or count <= 0:
            continue
        totals[name] = totals.get(name, 0) + count
    return [RoleDeclaration(name=name, slot_count=count) for name, count in totals.items()]


def build_roles_from_layout(layout: Sequence[SlotLayoutEntry]) -> list[RoleDeclaration]:
    counts: dict[str, int] = {}
    for slot in layout:
        name = normalize_role_name(slot.role)
        if name:
            counts[name] = counts.get(name, 0) + 1
    return [RoleDeclaration(name=name, slot_count=count) for name, count in counts.items()]


def build_layout_from_role_counts(roles: Sequence[RoleDeclaration]) -> list[SlotLayoutEntry]:
    layout: list[SlotLayoutEntry] = []
    for role in roles:
        name = normalize_role_name(role.name)
        if not name:
            continue
        for _ in range(max(0, role.slot_count)):
            layout.append(SlotLayoutEntry(slot_index=len(layout), role=name))
    return layout


def _claim_slot_index(base: list[SlotLayoutEntry], slot_index: int, role: str, claimed: set[int]) -> int | None:
    for position, slot in enumerate(base):
        if slot.slot_index == slot_index and position not in claimed and slot.role == role:
            return position
    return None


def _claim_exact_index(base: list[SlotLayoutEntry], row: SlotLayoutEntry, claimed: set[int]) -> int | None:
    return _claim_slot_index(base, row.slot_index, row.role, claimed)


def _claim_previous_index(base: list[SlotLayoutEntry], row: SlotLayoutEntry, claimed: set[int]) -> int | None:
    return _claim_slot_index(base, row.slot_index - 1, row.role, claimed)


def _claim_first_same_role(base: list[SlotLayoutEntry], row: SlotLayoutEntry, claimed: set[int]) -> int | None:
    for position, slot in enumerate(base):
        if position not in claimed and slot.role == row.role:
            return position
    return None


# Tried top to bottom; upstream producers are sometimes off by one.
SLOT_MATCHERS: tuple[Callable[[list[SlotLayoutEntry], SlotLayoutEntry, set[int]], int | None], ...] = (
    _claim_exact_index,
    _claim_previous_index,
    _claim_first_same_role,
)


def merge_slot_assignments(
    base_layout: Sequence[SlotLayoutEntry], slot_rows: Iterable[Any] | None
) -> list[SlotLayoutEntry]:
    """Copy occupant data from slot rows onto an authoritative base layout."""
    if not base_layout:
        return build_layout_from_slot_rows(slot_rows)

    merged = list(base_layout)
    claimed: set[int] = set()
    for row in build_layout_from_slot_rows(slot_rows):
        target = None
        for matcher in SLOT_MATCHERS:
            target = matcher(merged, row, claimed)
            if target is not None:
                break
        if target is None:
            continue
        existing = merged[target]
        merged[target] = replace(
            existing,
            hero_id=row.hero_id if row.hero_id is not None else existing.hero_id,
            owner_id=row.owner_id if row.owner_id is not None else existing.owner_id,
        )
        claimed.add(target)
    return sorted(merged, key=lambda slot: slot.slot_index)


def should_fall_back_to_declarations(
    declarations: Sequence[RoleDeclaration], layout: Sequence[SlotLayoutEntry]
) -> bool:
    declared_roles = {role.name for role in declarations if role.name}
    layout_roles = {slot.role for slot in layout if slot.role}
    if not declared_roles:
        return False
    if not layout_roles:
        return True
    covers_declared = declared_roles <= layout_roles
    introduces_undeclared = bool(layout_roles - declared_roles)
    return len(layout_roles) < len(declared_roles) and not covers_declared and introduces_undeclared


@dataclass(frozen=True)
class _Sources:
    inline_layout: list[SlotLayoutEntry]
    slot_rows: list[Any]
    slot_layout: list[SlotLayoutEntry]
    declarations: list[RoleDeclaration]


def _has_inline_layout(sources: _Sources) -> bool:
    return bool(sources.inline_layout)


def _resolve_inline(sources: _Sources) -> RoleResolution:
    layout = merge_slot_assignments(sources.inline_layout, sources.slot_rows)
    return RoleResolution(roles=build_roles_from_layout(layout), slot_layout=layout)


def _has_authoritative_slot_rows(sources: _Sources) -> bool:
    if not sources.slot_layout:
        return False
    return not should_fall_back_to_declarations(sources.declarations, sources.slot_layout)


def _resolve_slot_rows(sources: _Sources) -> RoleResolution:
    return RoleResolution(roles=build_roles_from_layout(sources.slot_layout), slot_layout=sources.slot_layout)


def _has_declarations(sources: _Sources) -> bool:
    return bool(sources.declarations)


def _resolve_declarations(sources: _Sources) -> RoleResolution:
    return RoleResolution(
        roles=list(sources.declarations),
        slot_layout=build_layout_from_role_counts(sources.declarations),
    )


RESOLUTION_TABLE: tuple[tuple[Callable[[_Sources], bool], Callable[[_Sources], RoleResolution]], ...] = (
    (_has_inline_layout, _resolve_inline),
    (_has_authoritative_slot_rows, _resolve_slot_rows),
    (_has_declarations, _resolve_declarations),
)


def resolve_roles_and_layout(
    role_rows: Iterable[Any] | None = None,
    slot_rows: Iterable[Any] | None = None,
    inline_slots: Iterable[Any] | None = None,
) -> RoleResolution:
    rows = list(slot_rows or [])
    sources = _Sources(
        inline_layout=derive_inline_layout(inline_slots),
        slot_rows=rows,
        slot_layout=build_layout_from_slot_rows(rows),
        declarations=build_roles_from_role_rows(role_rows),
    )
    for predicate, resolver in RESOLUTION_TABLE:
        if predicate(sources):
            return resolver(sources)
    return RoleResolution(roles=[], slot_layout=[])


def build_role_capacity_map(
    roles: Iterable[Any] | None = None, slot_layout: Iterable[Any] | None = None
) -> dict[str, int]:
    """Seats per role; a non-empty layout is authoritative over declared counts."""
    capacity: dict[str, int] = {}
    layout = list(slot_layout or [])
    if layout:
        for slot in layout:
            name = _role_of(slot)
            if name:
                capacity[name] = capacity.get(name, 0) + 1
        return capacity

    for role in roles or []:
        name = _role_of(role)
        if not name:
            continue
        if isinstance(role, RoleDeclaration):
            count = role.slot_count
        elif isinstance(role, Mapping):
            raw_count = next(
                (role[key] for key in ("slot_count", "slotCount", "capacity") if role.get(key) is not None),
                None,
            )
            count = coerce_slot_count(raw_count)
        else:
            continue
        if count <= 0:
            continue
        capacity[name] = capacity.get(name, 0) + count
    return capacity


def known_role_names(roles: Iterable[Any] | None = None, slot_layout: Iterable[Any] | None = None) -> set[str]:
    names = {_role_of(role) for role in roles or []}
    names.update(_role_of(slot) for slot in slot_layout or [])
    names.discard("")
    return names
