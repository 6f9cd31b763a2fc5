import asyncio
import copy

from rankmatch.backend.reconcile import _flatten, _resolve_hero_bucket, reconcile_assignments


ROLES = [
    {"name": "Tank", "slotCount": 1},
    {"name": "DPS", "slotCount": 2},
    {"name": "Healer", "slotCount": 1},
]


def _roster_lookup(roster: dict, calls: list | None = None):
    async def lookup(game_id, owner_ids):
        if calls is not None:
            calls.append((game_id, list(owner_ids)))
        return {owner_id: roster[owner_id] for owner_id in owner_ids if owner_id in roster}

    return lookup


def _failing_lookup():
    async def lookup(game_id, owner_ids):
        raise ConnectionError("roster service unavailable")

    return lookup


def _occupied_heroes(assignments: list[dict]) -> list[str]:
    heroes = []
    for assignment in assignments:
        for member in assignment["members"]:
            heroes.append(member.get("heroId") or member.get("hero_id"))
    return heroes


def _mixed_input() -> dict:
    return {
        "assignments": [
            {
                "role": "DPS",
                "slots": 2,
                "members": [
                    {"heroId": "H1", "ownerId": "O1"},
                    {"heroId": "H2", "ownerId": "O2"},
                    {"heroId": "H3", "ownerId": "O3"},
                ],
            },
            {
                "role": "Healer",
                "roleSlots": [
                    {"role": "Healer", "member": {"heroId": "H1", "ownerId": "O1"}},
                    {"role": "Healer", "heroId": "H4", "ownerId": "O4"},
                ],
            },
        ],
        "rooms": [
            {
                "id": "room-1",
                "slots": [
                    {"role": "DPS", "heroId": "H1", "ownerId": "O1"},
                    {"role": "Healer", "heroId": "H1", "ownerId": "O1"},
                    {"role": "DPS", "heroId": "H9", "ownerId": "O9"},
                ],
            }
        ],
    }


def test_role_mismatch_keeps_hero_in_registered_role() -> None:
    assignments = [
        {"role": "DPS", "slots": 2, "members": [{"heroId": "H1", "ownerId": "O1"}, {"heroId": "H2", "ownerId": "O2"}]},
        {"role": "Healer", "slots": 1, "members": [{"heroId": "H1", "ownerId": "O1"}]},
    ]
    lookup = _roster_lookup({"O1": [{"heroId": "H1", "role": "DPS"}]})

    result = asyncio.run(reconcile_assignments("game-1", assignments, roles=ROLES, lookup_roster=lookup))

    assert [member.to_dict() for member in result.removed_members] == [
        {"heroId": "H1", "ownerId": "O1", "role": "Healer", "reason": "role_mismatch"}
    ]
    dps, healer = result.assignments
    assert [member["heroId"] for member in dps["members"]] == ["H1", "H2"]
    assert dps["ready"] is True
    assert healer["members"] == []
    assert healer["filledSlots"] == 0
    assert healer["missingSlots"] == 1
    assert healer["ready"] is False


def test_capacity_overflow_drops_latest_members() -> None:
    assignments = [
        {
            "role": "DPS",
            "members": [
                {"heroId": "M1", "ownerId": "P1"},
                {"heroId": "M2", "ownerId": "P2"},
                {"heroId": "M3", "ownerId": "P3"},
            ],
        }
    ]

    result = asyncio.run(reconcile_assignments("game-1", assignments, roles=[{"name": "DPS", "slotCount": 2}]))

    assert [(member.hero_id, member.reason) for member in result.removed_members] == [("M3", "exceeds_capacity")]
    assert [member["heroId"] for member in result.assignments[0]["members"]] == ["M1", "M2"]


def test_exact_duplicates_keep_first_occurrence() -> None:
    assignments = [
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}]},
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}]},
    ]
    lookup = _roster_lookup({"O1": [{"heroId": "H1", "role": "DPS"}]})

    result = asyncio.run(reconcile_assignments("game-1", assignments, roles=ROLES, lookup_roster=lookup))

    assert [member.reason for member in result.removed_members] == ["duplicate_role"]
    assert [len(assignment["members"]) for assignment in result.assignments] == [1, 0]


def test_unknown_roster_duplicates_are_ambiguous() -> None:
    assignments = [
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}]},
        {"role": "Tank", "members": [{"heroId": "H1", "ownerId": "O1"}]},
    ]

    result = asyncio.run(reconcile_assignments("game-1", assignments, roles=ROLES))

    assert [(member.role, member.reason) for member in result.removed_members] == [("Tank", "duplicate_ambiguous")]
    assert _occupied_heroes(result.assignments) == ["H1"]


def test_exact_match_wins_over_unrecognized_role_claim() -> None:
    assignments = [
        {"role": "Flex", "members": [{"heroId": "H1", "ownerId": "O1"}]},
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}]},
    ]
    lookup = _roster_lookup({"O1": [{"heroId": "H1", "role": "DPS"}]})

    result = asyncio.run(reconcile_assignments("game-1", assignments, roles=ROLES, lookup_roster=lookup))

    assert [(member.role, member.reason) for member in result.removed_members] == [("Flex", "duplicate_role")]
    assert result.assignments[0]["members"] == []
    assert result.assignments[1]["members"][0]["role"] == "DPS"


def test_roster_lookup_is_batched_over_distinct_owners() -> None:
    calls: list = []
    data = _mixed_input()

    asyncio.run(
        reconcile_assignments(
            "game-7",
            data["assignments"],
            rooms=data["rooms"],
            roles=ROLES,
            lookup_roster=_roster_lookup({}, calls),
        )
    )

    assert calls == [("game-7", ["O1", "O2", "O3", "O4"])]


def test_failed_roster_lookup_reconciles_without_roster() -> None:
    assignments = [
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}]},
        {"role": "Healer", "members": [{"heroId": "H1", "ownerId": "O1"}]},
    ]

    result = asyncio.run(
        reconcile_assignments("game-1", assignments, roles=ROLES, lookup_roster=_failing_lookup())
    )

    assert [member.reason for member in result.removed_members] == ["duplicate_ambiguous"]
    assert _occupied_heroes(result.assignments) == ["H1"]


def test_slot_assignments_and_rooms_are_rebuilt() -> None:
    data = _mixed_input()
    lookup = _roster_lookup({"O1": [{"heroId": "H1", "role": "DPS"}]})

    result = asyncio.run(
        reconcile_assignments("game-1", data["assignments"], rooms=data["rooms"], roles=ROLES, lookup_roster=lookup)
    )

    reasons = sorted((member.hero_id, member.reason) for member in result.removed_members)
    assert reasons == [("H1", "role_mismatch"), ("H3", "exceeds_capacity")]

    healer = result.assignments[1]
    first_slot, second_slot = healer["roleSlots"]
    assert first_slot["occupied"] is False
    assert first_slot["member"] is None
    assert first_slot["heroId"] is None
    assert second_slot["occupied"] is True
    assert second_slot["heroId"] == "H4"
    assert healer["members"] == [second_slot["member"]]
    assert healer["filledSlots"] == 1
    assert healer["missingSlots"] == 1
    assert healer["ready"] is False

    room = result.rooms[0]
    assert [slot["heroId"] for slot in room["slots"]] == ["H1", None, "H9"]
    assert room["filledSlots"] == 2
    assert room["missingSlots"] == 1
    assert room["ready"] is False


def test_room_keeps_single_seat_per_hero() -> None:
    rooms = [{"slots": [{"role": "DPS", "heroId": "H5"}, {"role": "DPS", "heroId": "H5"}], "totalSlots": 2}]

    result = asyncio.run(reconcile_assignments("game-1", [], rooms=rooms, roles=ROLES))

    assert [slot["occupied"] for slot in result.rooms[0]["slots"]] == [True, False]


def test_reconcile_is_idempotent() -> None:
    data = _mixed_input()
    lookup = _roster_lookup({"O1": [{"heroId": "H1", "role": "DPS"}]})

    first = asyncio.run(
        reconcile_assignments("game-1", data["assignments"], rooms=data["rooms"], roles=ROLES, lookup_roster=lookup)
    )
    second = asyncio.run(
        reconcile_assignments("game-1", first.assignments, rooms=first.rooms, roles=ROLES, lookup_roster=lookup)
    )

    assert second.assignments == first.assignments
    assert second.rooms == first.rooms
    assert second.removed_members == []


def test_outputs_respect_uniqueness_and_capacity() -> None:
    data = _mixed_input()

    result = asyncio.run(reconcile_assignments("game-1", data["assignments"], rooms=data["rooms"], roles=ROLES))

    heroes = _occupied_heroes(result.assignments)
    assert len(heroes) == len(set(heroes))
    seated: dict[str, int] = {}
    for assignment in result.assignments:
        if assignment.get("roleSlots"):
            for slot in assignment["roleSlots"]:
                if slot["occupied"]:
                    seated[slot["role"]] = seated.get(slot["role"], 0) + 1
        else:
            for member in assignment["members"]:
                seated[member["role"]] = seated.get(member["role"], 0) + 1
    capacity = {"Tank": 1, "DPS": 2, "Healer": 1}
    assert all(count <= capacity[role] for role, count in seated.items())


def test_reconcile_does_not_mutate_inputs() -> None:
    data = _mixed_input()
    before = copy.deepcopy(data)

    result = asyncio.run(reconcile_assignments("game-1", data["assignments"], rooms=data["rooms"], roles=ROLES))
    result.assignments[0]["members"].append({"heroId": "X"})

    assert data == before


def test_result_serializes_removed_members() -> None:
    result = asyncio.run(
        reconcile_assignments(
            "game-1",
            [{"role": "DPS", "members": [{"heroId": "A"}, {"heroId": "B"}]}],
            roles=[{"name": "DPS", "slotCount": 1}],
        )
    )

    payload = result.to_dict()

    assert payload["removedMembers"] == [{"heroId": "B", "ownerId": None, "role": "DPS", "reason": "exceeds_capacity"}]
    assert payload["assignments"][0]["members"] == [{"heroId": "A", "role": "DPS"}]


def test_non_finite_slot_totals_fall_back_to_seat_count() -> None:
    assignments = [
        {"role": "DPS", "slots": float("inf"), "members": [{"heroId": "H1", "ownerId": "O1"}]},
        {
            "role": "Healer",
            "slots": float("nan"),
            "roleSlots": [{"role": "Healer", "heroId": "H2", "ownerId": "O2"}, {"role": "Healer"}],
        },
    ]
    rooms = [{"id": "room-1", "totalSlots": float("-inf"), "slots": [{"role": "DPS", "heroId": "H1", "ownerId": "O1"}]}]

    result = asyncio.run(reconcile_assignments("game-1", assignments, rooms=rooms, roles=ROLES))

    dps, healer = result.assignments
    assert (dps["filledSlots"], dps["missingSlots"], dps["ready"]) == (1, 0, True)
    assert (healer["filledSlots"], healer["missingSlots"], healer["ready"]) == (1, 1, False)
    assert (result.rooms[0]["filledSlots"], result.rooms[0]["missingSlots"]) == (1, 0)


def _duplicate_heavy_assignments() -> list[dict]:
    return [
        {"role": "DPS", "members": [{"heroId": "H1", "ownerId": "O1"}, {"heroId": "H2", "ownerId": "O2"}]},
        {"role": "Healer", "members": [{"heroId": "H1", "ownerId": "O1"}, {"heroId": "H3", "ownerId": "O3"}]},
        {"role": "Tank", "members": [{"heroId": "H2", "ownerId": "O2"}, {"heroId": "H3", "ownerId": "O3"}]},
        {"role": "Flex", "members": [{"heroId": "H3", "ownerId": "O3"}]},
    ]


def test_hero_buckets_resolve_the_same_in_any_order() -> None:
    roster = {"O1": [{"heroId": "H1", "role": "Healer"}], "O2": [{"heroId": "H2", "role": "DPS"}]}
    known = {"Tank", "DPS", "Healer"}

    def reasons(bucket_order) -> dict:
        entries = _flatten(copy.deepcopy(_duplicate_heavy_assignments()))
        buckets: dict[str, list] = {}
        for entry in entries:
            buckets.setdefault(entry.hero_id, []).append(entry)
        for hero_id in bucket_order(list(buckets)):
            _resolve_hero_bucket(buckets[hero_id], roster, known)
        return {(entry.assignment_index, entry.member_index): entry.reason for entry in entries}

    forward = reasons(lambda keys: keys)

    assert reasons(lambda keys: list(reversed(keys))) == forward
    assert reasons(lambda keys: keys[1:] + keys[:1]) == forward
    assert sum(1 for reason in forward.values() if reason) == 4


def test_independent_assignment_order_does_not_change_removals() -> None:
    assignments = [
        {"role": "DPS", "members": [{"heroId": "A1", "ownerId": "P1"}, {"heroId": "A1", "ownerId": "P1"}]},
        {"role": "Tank", "members": [{"heroId": "B1", "ownerId": "P2"}, {"heroId": "B1", "ownerId": "P2"}]},
        {"role": "Healer", "members": [{"heroId": "C1", "ownerId": "P3"}]},
    ]
    lookup = _roster_lookup({"P2": [{"heroId": "B1", "role": "Tank"}]})

    forward = asyncio.run(reconcile_assignments("game-1", assignments, lookup_roster=lookup))
    backward = asyncio.run(reconcile_assignments("game-1", list(reversed(assignments)), lookup_roster=lookup))

    def removed(result) -> set:
        return {(member.hero_id, member.role, member.reason) for member in result.removed_members}

    assert removed(forward) == removed(backward) == {
        ("A1", "DPS", "duplicate_ambiguous"),
        ("B1", "Tank", "duplicate_role"),
    }
    assert sorted(_occupied_heroes(forward.assignments)) == sorted(_occupied_heroes(backward.assignments))
