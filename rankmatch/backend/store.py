"""Per-match session state with persisted snapshots and change listeners."""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from rankmatch.backend.async_fill import build_async_fill_snapshot, normalize_realtime_mode
from rankmatch.backend.config import DEFAULT_SESSION_TTL_SECONDS, DEFAULT_TURN_TIMER_SECONDS
from rankmatch.backend.meta import (
    CLEAR,
    SessionMetaPatch,
    SetValue,
    apply_drop_in_bonus,
    apply_turn_timer_vote,
    count_arrivals,
    merge_session_meta,
    resolve_base_duration,
)
from rankmatch.backend.models import ParticipantRecord, ReconciliationResult
from rankmatch.backend.participants import normalize_id, normalize_participant_rows
from rankmatch.backend.reconcile import RosterLookup, reconcile_assignments
from rankmatch.backend.records import (
    build_hero_selection,
    build_match_snapshot,
    sanitize_session_history,
    sanitize_slot_template,
    slot_template_from_resolution,
)
from rankmatch.backend.roles import resolve_roles_and_layout
from rankmatch.backend.state import (
    build_empty_match_state,
    build_empty_session_history,
    build_empty_session_meta,
    build_empty_slot_template,
    now_ms,
    to_non_negative_int,
)

logger = structlog.get_logger()

SESSION_KEY_PREFIX = "rank.match.game."

Listener = Callable[[dict[str, Any]], None]


def session_storage_key(match_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{match_id}"


class SessionStorage(Protocol):
    def get(self, key: str) -> dict[str, Any] | None:
        """Return the persisted record for ``key`` or ``None``."""

    def set(self, key: str, record: dict[str, Any]) -> None:
        """Persist ``record`` under ``key``."""

    def remove(self, key: str) -> None:
        """Forget ``key``."""


@dataclass
class InMemorySessionStorage:
    def __post_init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def set(self, key: str, record: dict[str, Any]) -> None:
        self._records[key] = copy.deepcopy(record)

    def remove(self, key: str) -> None:
        self._records.pop(key, None)


@dataclass
class PostgresSessionStorage:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT record_json
                    FROM match_sessions
                    WHERE session_key = %s
                    """,
                    (key,),
                )
                row = cur.fetchone()

        if row is None:
            return None
        (record_json,) = row
        return record_json if isinstance(record_json, dict) else json.loads(record_json)

    def set(self, key: str, record: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO match_sessions (session_key, record_json, updated_at)
                    VALUES (%s, %s::jsonb, %s)
                    ON CONFLICT (session_key)
                    DO UPDATE SET record_json = EXCLUDED.record_json, updated_at = EXCLUDED.updated_at
                    """,
                    (key, json.dumps(record), now),
                )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM match_sessions WHERE session_key = %s", (key,))
            conn.commit()


def create_storage(database_url: str | None) -> SessionStorage:
    if database_url:
        return PostgresSessionStorage(database_url=database_url)
    return InMemorySessionStorage()


def _coerce_record(raw: Any) -> dict[str, Any]:
    record = build_empty_match_state()
    if not isinstance(raw, Mapping):
        return record
    for key in record:
        if key in raw:
            record[key] = copy.deepcopy(raw[key])
    if not isinstance(record["participation"], Mapping):
        record["participation"] = build_empty_match_state()["participation"]
    if not isinstance(record["sessionMeta"], Mapping):
        record["sessionMeta"] = build_empty_session_meta()
    if not isinstance(record["slotTemplate"], Mapping):
        record["slotTemplate"] = build_empty_slot_template()
    if not isinstance(record["sessionHistory"], Mapping):
        record["sessionHistory"] = build_empty_session_history()
    record["updatedAt"] = to_non_negative_int(record.get("updatedAt")) or 0
    return record


def _plain_rows(rows: Iterable[Any] | None) -> list[dict[str, Any]]:
    plain: list[dict[str, Any]] = []
    for row in rows or []:
        if isinstance(row, ParticipantRecord):
            plain.append(row.to_dict())
        elif isinstance(row, Mapping):
            plain.append(copy.deepcopy(dict(row)))
    return plain


@dataclass
class MatchStateStore:
    """Owns the live record per match id; every write goes through ``update``."""

    storage: SessionStorage | None = None
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    clock: Callable[[], int] = now_ms
    default_turn_timer_seconds: int = DEFAULT_TURN_TIMER_SECONDS
    roster_lookup: RosterLookup | None = None
    _records: dict[str, dict[str, Any]] = field(default_factory=dict, init=False, repr=False)
    _listeners: dict[str, set[Listener]] = field(default_factory=dict, init=False, repr=False)

    def _key(self, match_id: Any) -> str:
        key = normalize_id(match_id)
        if not key:
            raise ValueError("match id is required")
        return key

    def _load(self, key: str) -> dict[str, Any] | None:
        if self.storage is None:
            return None
        try:
            raw = self.storage.get(session_storage_key(key))
        except Exception as error:
            logger.warning("match state load failed", match_id=key, error=repr(error))
            return None
        return _coerce_record(raw) if raw is not None else None

    def _persist(self, key: str, record: dict[str, Any]) -> None:
        if self.storage is None:
            return
        try:
            self.storage.set(session_storage_key(key), record)
        except Exception as error:
            logger.warning("match state persist failed", match_id=key, error=repr(error))

    def _forget(self, key: str) -> None:
        if self.storage is None:
            return
        try:
            self.storage.remove(session_storage_key(key))
        except Exception as error:
            logger.warning("match state remove failed", match_id=key, error=repr(error))

    def _live_record(self, key: str) -> dict[str, Any]:
        record = self._records.get(key)
        if record is None:
            record = self._load(key) or build_empty_match_state()
            self._records[key] = record
        return record

    def _notify(self, key: str, record: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(copy.deepcopy(record))
            except Exception as error:
                logger.warning("match state listener failed", match_id=key, error=repr(error))

    def hydrate(self, match_id: Any) -> dict[str, Any]:
        return copy.deepcopy(self._live_record(self._key(match_id)))

    def read(self, match_id: Any) -> dict[str, Any]:
        """Return a copy of the record, preferring a newer persisted snapshot from another process."""
        key = self._key(match_id)
        record = self._live_record(key)
        persisted = self._load(key)
        if persisted is not None and persisted["updatedAt"] > record["updatedAt"]:
            self._records[key] = record = persisted
        return copy.deepcopy(record)

    def update(self, match_id: Any, mutator: Callable[[dict[str, Any]], dict[str, Any] | None]) -> dict[str, Any]:
        key = self._key(match_id)
        draft = copy.deepcopy(self._live_record(key))
        replaced = mutator(draft)
        if replaced is not None:
            draft = replaced
        draft["updatedAt"] = self.clock()
        self._records[key] = draft
        self._persist(key, draft)
        self._notify(key, draft)
        return copy.deepcopy(draft)

    def set_participation(
        self,
        match_id: Any,
        roster: Iterable[Any] | None,
        participant_pool: Iterable[Any] | None = None,
        realtime_mode: Any = "off",
        host_owner_id: Any = None,
        host_role_limit: Any = None,
        host_role: Any = None,
    ) -> dict[str, Any]:
        roster_rows = _plain_rows(roster)
        pool_rows = _plain_rows(participant_pool)
        mode = normalize_realtime_mode(realtime_mode)
        host_owner = normalize_id(host_owner_id)
        limit = to_non_negative_int(host_role_limit)

        def mutate(record: dict[str, Any]) -> None:
            stamp = self.clock()
            record["participation"] = {
                "roster": roster_rows,
                "participantPool": pool_rows,
                "realtimeMode": mode,
                "hostOwnerId": host_owner,
                "hostRoleLimit": limit,
                "updatedAt": stamp,
            }
            snapshot = build_async_fill_snapshot(
                roster_rows,
                pool_rows,
                mode,
                host_owner_id=host_owner,
                host_role_limit=limit,
                host_role=host_role,
                now=stamp,
            )
            patch = SessionMetaPatch(async_fill=SetValue(snapshot) if snapshot is not None else CLEAR)
            record["sessionMeta"] = merge_session_meta(record["sessionMeta"], patch, now=stamp)

        return self.update(match_id, mutate)

    def patch_session_meta(self, match_id: Any, patch: SessionMetaPatch | Mapping[str, Any] | None) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            record["sessionMeta"] = merge_session_meta(record["sessionMeta"], patch, now=self.clock())

        return self.update(match_id, mutate)

    def record_turn_timer_vote(self, match_id: Any, voter_id: Any, seconds: Any) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            stamp = self.clock()
            meta = record["sessionMeta"]
            vote_tree = dict(meta.get("vote") or {})
            tally = apply_turn_timer_vote(vote_tree.get("turnTimer"), voter_id, seconds, now=stamp)
            timer = dict(meta.get("turnTimer") or {})
            base = resolve_base_duration(tally, timer.get("baseSeconds"), default=self.default_turn_timer_seconds)
            vote_tree["turnTimer"] = tally
            timer.update(baseSeconds=base, source="vote", updatedAt=stamp)
            patch = SessionMetaPatch(vote=SetValue(vote_tree), turn_timer=SetValue(timer))
            record["sessionMeta"] = merge_session_meta(meta, patch, now=stamp)

        return self.update(match_id, mutate)

    def register_drop_in(self, match_id: Any, bonus_seconds: Any, arrivals: Any) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            stamp = self.clock()
            meta = record["sessionMeta"]
            turn_state = apply_drop_in_bonus(meta.get("turnState"), bonus_seconds, arrivals, now=stamp)
            drop_in = dict(meta.get("dropIn") or {})
            drop_in.update(
                arrivals=(to_non_negative_int(drop_in.get("arrivals")) or 0) + count_arrivals(arrivals),
                bonusSeconds=turn_state["dropInBonusSeconds"],
                turnNumber=turn_state["turnNumber"],
                appliedAt=turn_state["dropInBonusAppliedAt"],
                updatedAt=stamp,
            )
            patch = SessionMetaPatch(drop_in=SetValue(drop_in), turn_state=SetValue(turn_state))
            record["sessionMeta"] = merge_session_meta(meta, patch, now=stamp)

        return self.update(match_id, mutate)

    def set_slot_template(self, match_id: Any, payload: Mapping[str, Any] | None) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            record["slotTemplate"] = sanitize_slot_template(payload, record["slotTemplate"], now=self.clock())

        return self.update(match_id, mutate)

    def resolve_slot_template(
        self,
        match_id: Any,
        role_rows: Iterable[Any] | None = None,
        slot_rows: Iterable[Any] | None = None,
        inline_slots: Iterable[Any] | None = None,
        source: str = "",
    ) -> dict[str, Any]:
        """Resolve roles and layout and keep them as the match's slot template."""
        resolution = resolve_roles_and_layout(role_rows=role_rows, slot_rows=slot_rows, inline_slots=inline_slots)

        def mutate(record: dict[str, Any]) -> None:
            record["slotTemplate"] = slot_template_from_resolution(
                resolution, record["slotTemplate"], source=source, now=self.clock()
            )

        return self.update(match_id, mutate)

    def set_session_history(self, match_id: Any, patch: Mapping[str, Any] | None) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            record["sessionHistory"] = sanitize_session_history(patch, record["sessionHistory"], now=self.clock())

        return self.update(match_id, mutate)

    def set_hero_selection(
        self,
        match_id: Any,
        hero_id: Any,
        viewer_id: Any = None,
        owner_id: Any = None,
        role: Any = None,
        hero_meta: Any = None,
    ) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            record["heroSelection"] = build_hero_selection(
                hero_id, viewer_id=viewer_id, owner_id=owner_id, role=role, hero_meta=hero_meta, now=self.clock()
            )

        return self.update(match_id, mutate)

    def set_match_snapshot(self, match_id: Any, payload: Mapping[str, Any] | None) -> dict[str, Any]:
        def mutate(record: dict[str, Any]) -> None:
            record["matchSnapshot"] = build_match_snapshot(payload, now=self.clock())

        return self.update(match_id, mutate)

    def set_confirmation(self, match_id: Any, confirmation: Mapping[str, Any] | None) -> dict[str, Any]:
        """Store a confirmation; an empty one leaves the record untouched."""
        if not confirmation:
            return self.hydrate(match_id)

        def mutate(record: dict[str, Any]) -> None:
            record["confirmation"] = copy.deepcopy(dict(confirmation))

        return self.update(match_id, mutate)

    def _stored_roster_lookup(self, key: str) -> RosterLookup:
        async def lookup(_game_id: Any, owner_ids: list[str]) -> Mapping[str, Sequence[Any]]:
            roster = self._live_record(key)["participation"].get("roster") or []
            index = normalize_participant_rows(roster)
            return {owner_id: index[owner_id] for owner_id in owner_ids if owner_id in index}

        return lookup

    async def reconcile(
        self,
        match_id: Any,
        assignments: Iterable[Any] | None,
        rooms: Iterable[Any] | None = None,
        roles: Iterable[Any] | None = None,
        slot_layout: Iterable[Any] | None = None,
        lookup_roster: RosterLookup | None = None,
    ) -> ReconciliationResult:
        """Reconcile proposed assignments and keep the outcome under ``postCheck``.

        Without an explicit lookup the store's collaborator is used, then the
        roster last stored through ``set_participation``. When neither roles
        nor a layout are given, the stored slot template supplies both.
        """
        key = self._key(match_id)
        lookup = lookup_roster or self.roster_lookup or self._stored_roster_lookup(key)
        role_list = list(roles or [])
        layout = list(slot_layout or [])
        if not role_list and not layout:
            template = self._live_record(key)["slotTemplate"]
            role_list = copy.deepcopy(template.get("roles") or [])
            layout = copy.deepcopy(template.get("slots") or [])
        result = await reconcile_assignments(
            key,
            assignments,
            rooms=rooms,
            roles=role_list,
            slot_layout=layout,
            lookup_roster=lookup,
        )

        def mutate(record: dict[str, Any]) -> None:
            record["postCheck"] = {**result.to_dict(), "checkedAt": self.clock()}

        self.update(key, mutate)
        return result

    def clear(self, match_id: Any) -> None:
        key = self._key(match_id)
        self._records.pop(key, None)
        self._forget(key)
        self._notify(key, build_empty_match_state())

    def consume(self, match_id: Any) -> dict[str, Any]:
        snapshot = self.read(match_id)
        self.clear(match_id)
        return snapshot

    def subscribe(self, match_id: Any, listener: Listener) -> Callable[[], None]:
        key = self._key(match_id)
        self._listeners.setdefault(key, set()).add(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners is None:
                return
            listeners.discard(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def cleanup_expired(self, now: int | None = None) -> list[str]:
        cutoff = (now if now is not None else self.clock()) - self.ttl_seconds * 1000
        expired = [key for key, record in self._records.items() if record.get("updatedAt", 0) <= cutoff]
        for key in expired:
            self._records.pop(key, None)
            self._forget(key)
        if expired:
            logger.info("evicted expired match state", count=len(expired), match_ids=expired)
        return expired

    async def run_cleanup_loop(
        self, interval_seconds: float, on_expired: Callable[[list[str]], None] | None = None
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            expired = self.cleanup_expired()
            if expired and on_expired is not None:
                on_expired(expired)
