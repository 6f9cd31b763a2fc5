from rankmatch.backend.meta import (
    CLEAR,
    UNCHANGED,
    SessionMetaPatch,
    SetValue,
    apply_drop_in_bonus,
    apply_turn_timer_vote,
    merge_session_meta,
    patch_from_mapping,
    resolve_base_duration,
    sanitize_async_fill_snapshot,
    sanitize_turn_state,
    sanitize_turn_timer_vote,
    session_meta_structurally_equal,
)
from rankmatch.backend.state import build_empty_session_meta, build_empty_turn_state


def _meta_with_timer() -> dict:
    return merge_session_meta(None, {"turnTimer": {"baseSeconds": 45, "source": "host"}}, now=1000)


def test_vote_tally_moves_voter_to_new_duration() -> None:
    vote = apply_turn_timer_vote(None, "A", 30, now=10)
    vote = apply_turn_timer_vote(vote, "A", 60, now=20)

    assert vote["selections"] == {60: 1}
    assert vote["voters"] == {"A": 60}
    assert vote["lastSelection"] == 60
    assert vote["updatedAt"] == 20


def test_vote_ignores_invalid_voter_or_duration() -> None:
    vote = apply_turn_timer_vote(None, "A", 30, now=10)

    assert apply_turn_timer_vote(vote, "", 60, now=20) == vote
    assert apply_turn_timer_vote(vote, "B", "soon", now=20) == vote


def test_sanitize_vote_restores_integer_keys_from_json() -> None:
    vote = sanitize_turn_timer_vote({"turnTimer": {"selections": {"30": 2, "60": 1}, "lastSelection": "30"}})

    assert vote["selections"] == {30: 2, 60: 1}
    assert vote["lastSelection"] == 30


def test_resolve_base_duration_prefers_tally_then_smaller_duration() -> None:
    vote = apply_turn_timer_vote(None, "A", 90, now=1)
    vote = apply_turn_timer_vote(vote, "B", 30, now=2)

    assert resolve_base_duration(vote) == 30
    vote = apply_turn_timer_vote(vote, "C", 90, now=3)
    assert resolve_base_duration(vote) == 90
    assert resolve_base_duration(None, previous_base=45) == 45
    assert resolve_base_duration(None) == 60
    assert resolve_base_duration(None, default=120) == 120


def test_patch_from_mapping_distinguishes_absent_and_null() -> None:
    patch = patch_from_mapping({"turnTimer": None, "extras": {"note": "x"}})

    assert patch.turn_timer is CLEAR
    assert patch.extras == SetValue({"note": "x"})
    assert patch.vote is UNCHANGED


def test_clear_resets_subtree_and_bumps_updated_at() -> None:
    previous = _meta_with_timer()

    merged = merge_session_meta(previous, {"turnTimer": None}, now=2000)

    assert merged["turnTimer"] is None
    assert merged["updatedAt"] == 2000


def test_omitted_field_leaves_previous_value() -> None:
    previous = _meta_with_timer()

    merged = merge_session_meta(previous, {}, now=2000)

    assert merged["turnTimer"] == previous["turnTimer"]
    assert merged["updatedAt"] == 2000


def test_set_value_is_copied_not_aliased() -> None:
    extras = {"flags": ["a"]}

    merged = merge_session_meta(None, SessionMetaPatch(extras=SetValue(extras)), now=1)
    extras["flags"].append("b")

    assert merged["extras"] == {"flags": ["a"]}


def test_numeric_fields_are_coerced_or_keep_previous() -> None:
    previous = _meta_with_timer()

    merged = merge_session_meta(previous, {"turnTimer": {"baseSeconds": "-3"}}, now=3000)
    coerced = merge_session_meta(previous, {"turnTimer": {"baseSeconds": 75.9}}, now=3000)

    assert merged["turnTimer"]["baseSeconds"] == 45
    assert coerced["turnTimer"]["baseSeconds"] == 75


def test_turn_state_patch_is_partial() -> None:
    previous = merge_session_meta(None, {"turnState": {"turnNumber": 3, "deadline": 9000, "status": "running"}}, now=1)

    merged = merge_session_meta(previous, {"turnState": {"remainingSeconds": 12, "deadline": "later"}}, now=2)

    assert merged["turnState"]["turnNumber"] == 3
    assert merged["turnState"]["deadline"] == 9000
    assert merged["turnState"]["remainingSeconds"] == 12
    assert merged["turnState"]["status"] == "running"
    assert merged["turnState"]["updatedAt"] == 2


def test_turn_state_clear_resets_to_empty_default() -> None:
    previous = merge_session_meta(None, {"turnState": {"turnNumber": 3}}, now=1)

    merged = merge_session_meta(previous, {"turnState": None}, now=5)

    assert merged["turnState"] == {**build_empty_turn_state(), "updatedAt": 5}


def test_full_clear_returns_empty_meta() -> None:
    merged = merge_session_meta(_meta_with_timer(), CLEAR, now=7)

    assert merged == {**build_empty_session_meta(), "updatedAt": 7}


def test_sanitize_turn_state_rejects_bad_version() -> None:
    state = sanitize_turn_state({"version": 0, "turnNumber": 2.7, "source": " sync "})

    assert state["version"] == 1
    assert state["turnNumber"] == 2
    assert state["source"] == "sync"


def test_drop_in_bonus_extends_running_deadline_once_per_turn() -> None:
    turn_state = {"turnNumber": 4, "deadline": 50_000, "remainingSeconds": 20}

    applied = apply_drop_in_bonus(turn_state, 15, arrivals=1, now=30_000)
    repeated = apply_drop_in_bonus(applied, 15, arrivals=2, now=31_000)

    assert applied["deadline"] == 65_000
    assert applied["remainingSeconds"] == 35
    assert applied["status"] == "bonus-applied"
    assert applied["dropInBonusTurn"] == 4
    assert applied["dropInBonusAppliedAt"] == 30_000
    assert repeated == applied


def test_drop_in_bonus_is_queued_without_running_deadline() -> None:
    queued = apply_drop_in_bonus({"turnNumber": 1}, 10, arrivals=["p1"], now=100)
    next_turn = apply_drop_in_bonus({**queued, "turnNumber": 2}, 10, arrivals=1, now=200)

    assert queued["status"] == "bonus-queued"
    assert queued["deadline"] == 0
    assert next_turn["dropInBonusTurn"] == 2


def test_drop_in_bonus_requires_arrivals_and_bonus() -> None:
    state = {"turnNumber": 1, "deadline": 500}

    assert apply_drop_in_bonus(state, 10, arrivals=0, now=100)["dropInBonusAppliedAt"] == 0
    assert apply_drop_in_bonus(state, 0, arrivals=1, now=100)["dropInBonusAppliedAt"] == 0


def test_sanitize_async_fill_snapshot_clamps_allowed_to_total() -> None:
    snapshot = sanitize_async_fill_snapshot(
        {"seatLimit": {"allowed": 9, "total": "4"}, "seatIndexes": [0, "2", -1, "x"], "poolSize": -2}
    )

    assert snapshot["seatLimit"] == {"allowed": 4, "total": 4}
    assert snapshot["seatIndexes"] == [0, 2]
    assert snapshot["poolSize"] == 0
    assert snapshot["fillQueue"] == []


def test_structural_equality_ignores_timestamps() -> None:
    first = merge_session_meta(None, {"extras": {"a": 1}}, now=1)
    second = merge_session_meta(None, {"extras": {"a": 1}}, now=2)
    third = merge_session_meta(None, {"extras": {"a": 2}}, now=2)

    assert session_meta_structurally_equal(first, second) is True
    assert session_meta_structurally_equal(first, third) is False
