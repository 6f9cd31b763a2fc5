from rankmatch.backend.models import RoleDeclaration, SlotLayoutEntry
from rankmatch.backend.roles import (
    build_role_capacity_map,
    known_role_names,
    merge_slot_assignments,
    derive_inline_layout,
    resolve_roles_and_layout,
    should_fall_back_to_declarations,
)


def _declared_rows() -> list[dict]:
    return [
        {"name": "Tank", "slot_count": 1},
        {"name": "DPS", "slot_count": 2},
        {"name": "Healer", "slot_count": 1},
    ]


def test_build_role_capacity_map_from_declarations() -> None:
    declarations = [
        {"role": "Tank", "slotCount": 1},
        {"role": "DPS", "slotCount": 2},
        {"role": "Healer", "slotCount": 1},
    ]

    assert build_role_capacity_map(roles=declarations) == {"Tank": 1, "DPS": 2, "Healer": 1}


def test_build_role_capacity_map_prefers_layout_and_sums_duplicates() -> None:
    layout = [SlotLayoutEntry(slot_index=0, role="Tank"), SlotLayoutEntry(slot_index=1, role="DPS")]

    assert build_role_capacity_map(roles=[{"name": "Tank", "slotCount": 5}], slot_layout=layout) == {
        "Tank": 1,
        "DPS": 1,
    }
    assert build_role_capacity_map(roles=[RoleDeclaration("DPS", 1), RoleDeclaration("DPS", 2)]) == {"DPS": 3}
    assert build_role_capacity_map(roles=[{"name": "Bench", "slotCount": 0}]) == {}


def test_resolve_prefers_inline_layout() -> None:
    resolution = resolve_roles_and_layout(role_rows=_declared_rows(), inline_slots=["Tank", "DPS", None, "DPS"])

    assert [(slot.slot_index, slot.role) for slot in resolution.slot_layout] == [(0, "Tank"), (1, "DPS"), (3, "DPS")]
    assert resolution.roles == [RoleDeclaration("Tank", 1), RoleDeclaration("DPS", 2)]


def test_resolve_uses_authoritative_slot_rows() -> None:
    slot_rows = [
        {"slot_index": 2, "role": "DPS", "hero_id": "h3", "hero_owner_id": "o3"},
        {"slot_index": 0, "role": "Tank"},
        {"slot_index": 1, "role": "DPS"},
        {"slot_index": 3, "role": "Healer", "active": False},
    ]

    resolution = resolve_roles_and_layout(role_rows=_declared_rows(), slot_rows=slot_rows)

    assert [slot.role for slot in resolution.slot_layout] == ["Tank", "DPS", "DPS"]
    assert resolution.slot_layout[2].hero_id == "h3"
    assert resolution.slot_layout[2].owner_id == "o3"
    assert resolution.roles == [RoleDeclaration("Tank", 1), RoleDeclaration("DPS", 2)]


def test_resolve_falls_back_to_declarations_for_partial_foreign_layout() -> None:
    resolution = resolve_roles_and_layout(role_rows=_declared_rows(), slot_rows=[{"slot_index": 0, "role": "Support"}])

    assert [slot.role for slot in resolution.slot_layout] == ["Tank", "DPS", "DPS", "Healer"]
    assert [slot.slot_index for slot in resolution.slot_layout] == [0, 1, 2, 3]
    assert build_role_capacity_map(resolution.roles, resolution.slot_layout) == {"Tank": 1, "DPS": 2, "Healer": 1}


def test_resolve_keeps_partial_layout_of_declared_roles() -> None:
    resolution = resolve_roles_and_layout(role_rows=_declared_rows(), slot_rows=[{"slot_index": 0, "role": "Tank"}])

    assert [slot.role for slot in resolution.slot_layout] == ["Tank"]


def test_resolve_without_sources_is_empty() -> None:
    resolution = resolve_roles_and_layout()

    assert resolution.roles == []
    assert resolution.slot_layout == []


def test_should_fall_back_requires_every_condition() -> None:
    declarations = [RoleDeclaration("Tank", 1), RoleDeclaration("DPS", 2)]

    assert should_fall_back_to_declarations(declarations, []) is True
    assert should_fall_back_to_declarations(declarations, [SlotLayoutEntry(0, "Support")]) is True
    assert should_fall_back_to_declarations(declarations, [SlotLayoutEntry(0, "Tank")]) is False
    assert (
        should_fall_back_to_declarations(declarations, [SlotLayoutEntry(0, "Tank"), SlotLayoutEntry(1, "Support")])
        is False
    )
    assert should_fall_back_to_declarations([], [SlotLayoutEntry(0, "Tank")]) is False


def test_merge_slot_assignments_matches_exact_then_previous_index() -> None:
    base = derive_inline_layout(["Tank", "DPS", "DPS"])
    rows = [
        {"slot_index": 2, "role": "DPS", "hero_id": "h2", "owner_id": "o2"},
        {"slot_index": 1, "role": "Tank", "hero_id": "h1", "owner_id": "o1"},
    ]

    merged = merge_slot_assignments(base, rows)

    assert [(slot.role, slot.hero_id) for slot in merged] == [("Tank", "h1"), ("DPS", None), ("DPS", "h2")]


def test_merge_slot_assignments_falls_back_to_first_free_slot_of_role() -> None:
    base = derive_inline_layout(["Tank", "DPS", "DPS"])
    rows = [
        {"slot_index": 1, "role": "DPS", "hero_id": "h1"},
        {"slot_index": 7, "role": "DPS", "hero_id": "h2"},
        {"slot_index": 0, "role": "Healer", "hero_id": "h3"},
    ]

    merged = merge_slot_assignments(base, rows)

    assert [slot.hero_id for slot in merged] == [None, "h1", "h2"]


def test_known_role_names_merges_declarations_and_layout() -> None:
    names = known_role_names([{"name": "Tank"}, "DPS", {"name": " "}], [SlotLayoutEntry(0, "Healer")])

    assert names == {"Tank", "DPS", "Healer"}
