"""Session meta patching: tagged patch values, sanitisers, timer votes and drop-in bonuses."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from rankmatch.backend.config import DEFAULT_TURN_TIMER_SECONDS
from rankmatch.backend.models import AsyncFillSnapshot
from rankmatch.backend.participants import normalize_id
from rankmatch.backend.state import build_empty_session_meta, build_empty_turn_state, now_ms, to_non_negative_int


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


class _Clear:
    def __repr__(self) -> str:
        return "CLEAR"


UNCHANGED = _Unchanged()
CLEAR = _Clear()


@dataclass(frozen=True)
class SetValue:
    value: Any


PatchValue = Union[_Unchanged, _Clear, SetValue]


@dataclass(frozen=True)
class SessionMetaPatch:
    turn_timer: PatchValue = UNCHANGED
    vote: PatchValue = UNCHANGED
    drop_in: PatchValue = UNCHANGED
    async_fill: PatchValue = UNCHANGED
    turn_state: PatchValue = UNCHANGED
    extras: PatchValue = UNCHANGED
    source: PatchValue = UNCHANGED


_FIELDS = (
    ("turn_timer", "turnTimer"),
    ("vote", "vote"),
    ("drop_in", "dropIn"),
    ("async_fill", "asyncFill"),
    ("turn_state", "turnState"),
    ("extras", "extras"),
    ("source", "source"),
)

_TURN_STATE_COUNTERS = (
    "turnNumber",
    "scheduledAt",
    "deadline",
    "durationSeconds",
    "remainingSeconds",
    "dropInBonusSeconds",
    "dropInBonusAppliedAt",
    "dropInBonusTurn",
    "updatedAt",
)
_DROP_IN_COUNTERS = ("bonusSeconds", "arrivals", "turnNumber", "appliedAt", "updatedAt")


def patch_from_mapping(mapping: Mapping[str, Any] | None) -> SessionMetaPatch:
    """Absent keys stay unchanged, ``None`` clears, anything else is set."""
    if not isinstance(mapping, Mapping):
        return SessionMetaPatch()
    values: dict[str, PatchValue] = {}
    for attribute, key in _FIELDS:
        if key in mapping:
            raw = mapping[key]
        elif attribute in mapping:
            raw = mapping[attribute]
        else:
            continue
        values[attribute] = CLEAR if raw is None else SetValue(raw)
    return SessionMetaPatch(**values)


def _counter(value: Any, previous: Any = None) -> int:
    numeric = to_non_negative_int(value)
    if numeric is not None:
        return numeric
    return to_non_negative_int(previous) or 0


def _text(value: Any, previous: Any = "") -> str:
    if isinstance(value, str):
        return value.strip()
    return previous if isinstance(previous, str) else ""


def sanitize_turn_timer(value: Any, previous: Any = None) -> dict[str, Any] | None:
    prior = previous if isinstance(previous, Mapping) else {}
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = {"baseSeconds": value}
    if not isinstance(value, Mapping):
        return copy.deepcopy(dict(prior)) if prior else None
    timer = copy.deepcopy(dict(value))
    timer["baseSeconds"] = _counter(value.get("baseSeconds"), prior.get("baseSeconds"))
    timer["source"] = _text(value.get("source"), prior.get("source", ""))
    timer["updatedAt"] = _counter(value.get("updatedAt"), prior.get("updatedAt"))
    return timer


def build_empty_turn_timer_vote() -> dict[str, Any]:
    return {"selections": {}, "voters": {}, "lastSelection": None, "updatedAt": 0}


def sanitize_turn_timer_vote(vote: Any) -> dict[str, Any]:
    """Normalise a vote record; tallies are rebuilt from voters when voters are recorded."""
    record = build_empty_turn_timer_vote()
    if not isinstance(vote, Mapping):
        return record
    if isinstance(vote.get("turnTimer"), Mapping):
        vote = vote["turnTimer"]

    voters: dict[str, int] = {}
    raw_voters = vote.get("voters")
    if isinstance(raw_voters, Mapping):
        for voter_id, seconds in raw_voters.items():
            voter = normalize_id(voter_id)
            duration = to_non_negative_int(seconds)
            if voter and duration:
                voters[voter] = duration

    selections: dict[int, int] = {}
    if voters:
        for duration in voters.values():
            selections[duration] = selections.get(duration, 0) + 1
    else:
        raw_selections = vote.get("selections")
        if isinstance(raw_selections, Mapping):
            for seconds, count in raw_selections.items():
                duration = to_non_negative_int(seconds)
                tally = to_non_negative_int(count)
                if duration and tally:
                    selections[duration] = selections.get(duration, 0) + tally

    last = to_non_negative_int(vote.get("lastSelection"))
    record["selections"] = selections
    record["voters"] = voters
    record["lastSelection"] = last if last else None
    record["updatedAt"] = _counter(vote.get("updatedAt"))
    return record


def apply_turn_timer_vote(vote: Any, voter_id: Any, duration: Any, now: int | None = None) -> dict[str, Any]:
    """Move a voter's tally to ``duration``; invalid voters or durations leave the record as is."""
    record = sanitize_turn_timer_vote(vote)
    voter = normalize_id(voter_id)
    seconds = to_non_negative_int(duration)
    if not voter or not seconds:
        return record

    selections = record["selections"]
    previous = record["voters"].get(voter)
    if previous is not None:
        remaining = selections.get(previous, 0) - 1
        if remaining > 0:
            selections[previous] = remaining
        else:
            selections.pop(previous, None)
    selections[seconds] = selections.get(seconds, 0) + 1
    record["voters"][voter] = seconds
    record["lastSelection"] = seconds
    record["updatedAt"] = now if now is not None else now_ms()
    return record


def resolve_base_duration(vote: Any, previous_base: Any = None, default: int = DEFAULT_TURN_TIMER_SECONDS) -> int:
    selections = sanitize_turn_timer_vote(vote)["selections"]
    if selections:
        # highest tally wins, smaller duration on ties
        return min(selections, key=lambda seconds: (-selections[seconds], seconds))
    previous = to_non_negative_int(previous_base)
    return previous if previous else default


def _sanitize_vote(value: Any, previous: Any = None) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return copy.deepcopy(previous) if isinstance(previous, Mapping) else None
    vote = copy.deepcopy(dict(value))
    vote["turnTimer"] = sanitize_turn_timer_vote(value.get("turnTimer") if "turnTimer" in value else value)
    for key in ("selections", "voters", "lastSelection", "updatedAt"):
        vote.pop(key, None)
    return vote


def _sanitize_drop_in(value: Any, previous: Any = None) -> dict[str, Any] | None:
    prior = previous if isinstance(previous, Mapping) else {}
    if not isinstance(value, Mapping):
        return copy.deepcopy(dict(prior)) if prior else None
    drop_in = copy.deepcopy(dict(value))
    for key in _DROP_IN_COUNTERS:
        if key in drop_in:
            drop_in[key] = _counter(drop_in[key], prior.get(key))
    return drop_in


def sanitize_async_fill_snapshot(value: Any, previous: Any = None) -> dict[str, Any] | None:
    if isinstance(value, AsyncFillSnapshot):
        value = value.to_dict()
    if not isinstance(value, Mapping):
        return copy.deepcopy(previous) if isinstance(previous, Mapping) else None
    snapshot = copy.deepcopy(dict(value))
    limit = value.get("seatLimit") if isinstance(value.get("seatLimit"), Mapping) else {}
    total = _counter(limit.get("total"))
    snapshot["seatLimit"] = {"allowed": min(_counter(limit.get("allowed")), total), "total": total}
    for key in ("seatIndexes", "pendingSeatIndexes"):
        raw = value.get(key)
        indexes = [to_non_negative_int(item) for item in raw] if isinstance(raw, list) else []
        snapshot[key] = [index for index in indexes if index is not None]
    for key in ("assigned", "overflow", "fillQueue"):
        if not isinstance(snapshot.get(key), list):
            snapshot[key] = []
    snapshot["poolSize"] = _counter(value.get("poolSize"))
    snapshot["generatedAt"] = _counter(value.get("generatedAt"))
    return snapshot


def sanitize_turn_state(patch: Any, previous: Any = None) -> dict[str, Any]:
    """Apply a partial turn-state patch field by field over ``previous``."""
    state = build_empty_turn_state()
    if isinstance(previous, Mapping):
        for key in state:
            if key in previous:
                state[key] = copy.deepcopy(previous[key])
    if not isinstance(patch, Mapping):
        return state

    if "version" in patch:
        version = to_non_negative_int(patch["version"])
        if version:
            state["version"] = version
    for key in _TURN_STATE_COUNTERS:
        if key in patch:
            state[key] = _counter(patch[key], state.get(key))
    for key in ("status", "source"):
        if key in patch:
            state[key] = _text(patch[key], state.get(key, ""))
    return state


def count_arrivals(arrivals: Any) -> int:
    if isinstance(arrivals, (int, float)) and not isinstance(arrivals, bool):
        return to_non_negative_int(arrivals) or 0
    if isinstance(arrivals, Iterable) and not isinstance(arrivals, (str, bytes, Mapping)):
        return sum(1 for _ in arrivals)
    return 0


def apply_drop_in_bonus(turn_state: Any, bonus_seconds: Any, arrivals: Any, now: int | None = None) -> dict[str, Any]:
    """Grant the drop-in bonus at most once per turn.

    A running deadline is pushed back by the bonus and the status becomes
    ``bonus-applied``; without a future deadline the bonus is recorded as
    ``bonus-queued`` for the next timer start.
    """
    state = sanitize_turn_state(None, turn_state)
    bonus = to_non_negative_int(bonus_seconds) or 0
    if bonus <= 0 or count_arrivals(arrivals) <= 0:
        return state

    turn = state["turnNumber"]
    if state["dropInBonusAppliedAt"] > 0 and state["dropInBonusTurn"] == turn:
        return state

    stamp = now if now is not None else now_ms()
    state["dropInBonusSeconds"] = bonus
    state["dropInBonusAppliedAt"] = stamp
    state["dropInBonusTurn"] = turn
    if state["deadline"] > stamp:
        state["deadline"] += bonus * 1000
        state["remainingSeconds"] += bonus
        state["status"] = "bonus-applied"
    else:
        state["status"] = "bonus-queued"
    state["updatedAt"] = stamp
    return state


def _empty_subtree(key: str) -> Any:
    if key == "turnState":
        return build_empty_turn_state()
    if key == "source":
        return ""
    return None


def _set_subtree(key: str, value: Any, previous: Any, stamp: int) -> Any:
    if key == "turnTimer":
        return sanitize_turn_timer(value, previous)
    if key == "vote":
        return _sanitize_vote(value, previous)
    if key == "dropIn":
        return _sanitize_drop_in(value, previous)
    if key == "asyncFill":
        return sanitize_async_fill_snapshot(value, previous)
    if key == "turnState":
        state = sanitize_turn_state(value, previous)
        state["updatedAt"] = stamp
        return state
    if key == "source":
        return _text(value, previous)
    return copy.deepcopy(value)


def merge_session_meta(
    previous: Mapping[str, Any] | None,
    patch: SessionMetaPatch | Mapping[str, Any] | _Clear | None,
    now: int | None = None,
) -> dict[str, Any]:
    stamp = now if now is not None else now_ms()
    if patch is CLEAR:
        cleared = build_empty_session_meta()
        cleared["updatedAt"] = stamp
        return cleared
    if not isinstance(patch, SessionMetaPatch):
        patch = patch_from_mapping(patch)

    merged = build_empty_session_meta()
    if isinstance(previous, Mapping):
        merged.update(copy.deepcopy(dict(previous)))

    for attribute, key in _FIELDS:
        value = getattr(patch, attribute)
        if value is UNCHANGED:
            continue
        if value is CLEAR or (isinstance(value, SetValue) and value.value is None):
            merged[key] = _empty_subtree(key)
            if key == "turnState":
                merged[key]["updatedAt"] = stamp
            continue
        merged[key] = _set_subtree(key, value.value, merged.get(key), stamp)

    merged["updatedAt"] = stamp
    return merged


def _without_timestamps(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _without_timestamps(item) for key, item in value.items() if key != "updatedAt"}
    if isinstance(value, list):
        return [_without_timestamps(item) for item in value]
    return value


def session_meta_structurally_equal(left: Any, right: Any) -> bool:
    return _without_timestamps(left) == _without_timestamps(right)
