"""Outbound session-meta sync with signature based dedup."""

from __future__ import annotations

import hashlib
import json
from collections import OrderedDict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from rankmatch.backend.async_fill import normalize_realtime_mode
from rankmatch.backend.meta import sanitize_async_fill_snapshot, sanitize_turn_state, sanitize_turn_timer_vote
from rankmatch.backend.participants import normalize_id
from rankmatch.backend.state import to_non_negative_int

logger = structlog.get_logger()


@dataclass(frozen=True)
class MetaRequest:
    meta_payload: dict[str, Any] | None
    turn_state_event: dict[str, Any] | None
    meta_signature: str
    turn_state_signature: str


def payload_signature(payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _time_vote(vote: Any) -> dict[str, Any] | None:
    record = sanitize_turn_timer_vote(vote)
    if record["lastSelection"] or record["updatedAt"] or record["selections"] or record["voters"]:
        return record
    return None


def _drop_in_bonus(drop_in: Any, turn_state: Mapping[str, Any] | None) -> int | None:
    if turn_state and turn_state.get("dropInBonusSeconds"):
        return turn_state["dropInBonusSeconds"]
    if isinstance(drop_in, Mapping):
        bonus = to_non_negative_int(drop_in.get("bonusSeconds", drop_in.get("bonus_seconds")))
        if bonus:
            return bonus
    return None


def build_session_meta_request(state: Mapping[str, Any] | None) -> MetaRequest:
    """Translate a match record into the sync endpoint's ``meta`` and turn-state event."""
    if not isinstance(state, Mapping):
        return MetaRequest(meta_payload=None, turn_state_event=None, meta_signature="", turn_state_signature="")

    session_meta = state.get("sessionMeta") or {}
    participation = state.get("participation") or {}
    raw_turn_state = session_meta.get("turnState")
    turn_state = sanitize_turn_state(raw_turn_state) if isinstance(raw_turn_state, Mapping) else None
    drop_in_bonus = _drop_in_bonus(session_meta.get("dropIn"), turn_state)
    timer = session_meta.get("turnTimer") if isinstance(session_meta.get("turnTimer"), Mapping) else {}

    meta_payload = {
        "selected_time_limit_seconds": to_non_negative_int(timer.get("baseSeconds")) or None,
        "time_vote": _time_vote(session_meta.get("vote")),
        "drop_in_bonus_seconds": drop_in_bonus,
        "turn_state": turn_state,
        "async_fill_snapshot": sanitize_async_fill_snapshot(session_meta.get("asyncFill")),
        "realtime_mode": normalize_realtime_mode(participation.get("realtimeMode")),
    }

    turn_state_event = None
    turn_state_signature = ""
    if turn_state is not None:
        turn_state_event = {
            "turn_state": turn_state,
            "turn_number": turn_state["turnNumber"],
            "source": session_meta.get("source") or turn_state["source"] or None,
            "extras": (
                {"dropInBonusSeconds": drop_in_bonus, "dropInBonusAppliedAt": turn_state["dropInBonusAppliedAt"]}
                if drop_in_bonus
                else None
            ),
        }
        turn_state_signature = payload_signature(
            {
                "turn": turn_state["turnNumber"],
                "deadline": turn_state["deadline"],
                "remaining": turn_state["remainingSeconds"],
                "status": turn_state["status"],
                "updatedAt": turn_state["updatedAt"],
                "bonus": turn_state["dropInBonusSeconds"],
                "bonusAppliedAt": turn_state["dropInBonusAppliedAt"],
            }
        )

    return MetaRequest(
        meta_payload=meta_payload,
        turn_state_event=turn_state_event,
        meta_signature=payload_signature(meta_payload),
        turn_state_signature=turn_state_signature,
    )


@dataclass
class SessionMetaDispatcher:
    client: httpx.AsyncClient
    endpoint_url: str
    token: str | None = None
    max_sessions: int = 1024
    _sent: OrderedDict[str, tuple[str, str]] = field(default_factory=OrderedDict, init=False, repr=False)

    def last_signatures(self, session_id: str) -> tuple[str, str] | None:
        return self._sent.get(session_id)

    def forget(self, session_ids: Iterable[Any]) -> None:
        for session_id in session_ids:
            self._sent.pop(normalize_id(session_id) or "", None)

    def _remember(self, session: str, signatures: tuple[str, str]) -> None:
        self._sent[session] = signatures
        self._sent.move_to_end(session)
        while len(self._sent) > self.max_sessions:
            self._sent.popitem(last=False)

    async def dispatch(
        self,
        session_id: Any,
        game_id: Any,
        meta: MetaRequest,
        room_id: Any = None,
        match_instance_id: Any = None,
        collaborators: Sequence[Any] | None = None,
        source: str | None = None,
    ) -> bool:
        """Post ``meta`` unless the same signatures were already delivered.

        Returns ``False`` only when the request failed; the last delivered
        signatures are kept so the next call retries the same payload.
        """
        session = normalize_id(session_id)
        if not session:
            raise ValueError("session_id is required")
        if meta.meta_payload is None:
            return True

        signatures = (meta.meta_signature, meta.turn_state_signature)
        if self._sent.get(session) == signatures:
            self._sent.move_to_end(session)
            return True

        body: dict[str, Any] = {
            "session_id": session,
            "game_id": normalize_id(game_id),
            "meta": meta.meta_payload,
        }
        if room_id is not None:
            body["room_id"] = normalize_id(room_id)
        if match_instance_id is not None:
            body["match_instance_id"] = normalize_id(match_instance_id)
        if collaborators:
            body["collaborators"] = [normalize_id(item) for item in collaborators if normalize_id(item)]
        if meta.turn_state_event is not None:
            body["turn_state_event"] = meta.turn_state_event
        if source:
            body["source"] = source

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.client.post(self.endpoint_url, json=body, headers=headers)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as error:
            logger.warning("session meta sync failed", session_id=session, error=repr(error))
            return False

        self._remember(session, signatures)
        return True
