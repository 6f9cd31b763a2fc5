"""FastAPI endpoints for match state, reconciliation and websocket sync."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .config import load_settings
from .reconcile import RosterLookup
from .roles import build_role_capacity_map, resolve_roles_and_layout
from .state import to_non_negative_int
from .store import MatchStateStore, create_storage
from .sync import SessionMetaDispatcher, build_session_meta_request

logger = structlog.get_logger()


class MatchStateResponse(BaseModel):
    state: dict[str, Any]


class ParticipationRequest(BaseModel):
    roster: list[dict[str, Any]] = Field(default_factory=list)
    participant_pool: list[dict[str, Any]] = Field(default_factory=list)
    realtime_mode: str | bool | None = "off"
    host_owner_id: str | None = None
    host_role_limit: int | None = Field(default=None, ge=0)
    host_role: str | None = None


class SessionMetaRequest(BaseModel):
    patch: dict[str, Any]


class TurnTimerVoteRequest(BaseModel):
    voter_id: str = Field(min_length=1)
    seconds: int = Field(gt=0, le=3600)


class DropInRequest(BaseModel):
    bonus_seconds: int = Field(ge=0, le=3600)
    arrivals: int = Field(default=1, ge=0)


class ReconcileRequest(BaseModel):
    assignments: list[dict[str, Any]] = Field(default_factory=list)
    rooms: list[dict[str, Any]] = Field(default_factory=list)
    roles: list[Any] = Field(default_factory=list)
    slot_layout: list[dict[str, Any]] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    result: dict[str, Any]
    state: dict[str, Any]


class ResolveRolesRequest(BaseModel):
    role_rows: list[dict[str, Any]] = Field(default_factory=list)
    slot_rows: list[dict[str, Any]] = Field(default_factory=list)
    inline_slots: list[Any] = Field(default_factory=list)


class RoleResolutionResponse(BaseModel):
    roles: list[dict[str, Any]]
    slot_layout: list[dict[str, Any]]
    capacity: dict[str, int]


class SlotTemplateRequest(ResolveRolesRequest):
    source: str = ""


class SessionHistoryRequest(BaseModel):
    patch: dict[str, Any] | None


class MatchWebSocketHub:
    """Per-match fan-out that never pushes a snapshot older than the last one sent."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)
        self._latest: dict[str, int] = {}

    async def connect(self, match_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[match_id].add(websocket)

    def disconnect(self, match_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(match_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(match_id, None)
            self._latest.pop(match_id, None)

    async def send_state(self, websocket: WebSocket, match_id: str, state: dict[str, Any]) -> None:
        await websocket.send_json(
            {
                "type": "match.state",
                "matchId": match_id,
                "updatedAt": to_non_negative_int(state.get("updatedAt")) or 0,
                "state": state,
            }
        )

    async def broadcast_state(self, match_id: str, state: dict[str, Any]) -> int:
        """Send ``state`` to every socket of the match; return how many received it."""
        stamp = to_non_negative_int(state.get("updatedAt")) or 0
        if stamp < self._latest.get(match_id, 0):
            logger.debug("stale match state not broadcast", match_id=match_id, updated_at=stamp)
            return 0
        self._latest[match_id] = stamp

        delivered = 0
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections.get(match_id, set())):
            try:
                await self.send_state(websocket, match_id, state)
            except (RuntimeError, WebSocketDisconnect):
                stale_connections.append(websocket)
                continue
            delivered += 1
        for websocket in stale_connections:
            self.disconnect(match_id=match_id, websocket=websocket)
        return delivered


def create_app(
    store: MatchStateStore | None = None,
    roster_lookup: RosterLookup | None = None,
    dispatcher: SessionMetaDispatcher | None = None,
) -> FastAPI:
    settings = load_settings()
    match_store = store
    if match_store is None:
        match_store = MatchStateStore(
            storage=create_storage(settings.database_url),
            ttl_seconds=settings.session_ttl_seconds,
            default_turn_timer_seconds=settings.default_turn_timer_seconds,
        )
    owned_client: httpx.AsyncClient | None = None
    if dispatcher is None and settings.meta_sync_url:
        owned_client = httpx.AsyncClient(timeout=10.0)
        dispatcher = SessionMetaDispatcher(
            client=owned_client,
            endpoint_url=settings.meta_sync_url,
            token=settings.meta_sync_token,
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        cleanup_task = None
        if settings.cleanup_interval_seconds > 0:
            on_expired = dispatcher.forget if dispatcher is not None else None
            cleanup_task = asyncio.create_task(
                match_store.run_cleanup_loop(settings.cleanup_interval_seconds, on_expired=on_expired)
            )
        try:
            yield
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
            if owned_client is not None:
                await owned_client.aclose()

    app = FastAPI(title="Rank Match API", version="0.1.0", lifespan=lifespan)
    websocket_hub = MatchWebSocketHub()
    app.state.websocket_hub = websocket_hub
    app.state.match_store = match_store

    async def publish_state(match_id: str, state: dict[str, Any]) -> None:
        await websocket_hub.broadcast_state(match_id=match_id, state=state)
        if dispatcher is not None:
            await dispatcher.dispatch(
                session_id=match_id,
                game_id=match_id,
                meta=build_session_meta_request(state),
                source="rankmatch",
            )

    app.state.publish_state = publish_state

    def get_store() -> MatchStateStore:
        return match_store

    @app.get("/api/matches/{match_id}", response_model=MatchStateResponse)
    def get_match(match_id: str, local_store: MatchStateStore = Depends(get_store)) -> MatchStateResponse:
        return MatchStateResponse(state=local_store.read(match_id))

    @app.post("/api/matches/{match_id}/participation", response_model=MatchStateResponse)
    async def post_participation(
        match_id: str,
        payload: ParticipationRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.set_participation(
            match_id,
            roster=payload.roster,
            participant_pool=payload.participant_pool,
            realtime_mode=payload.realtime_mode,
            host_owner_id=payload.host_owner_id,
            host_role_limit=payload.host_role_limit,
            host_role=payload.host_role,
        )
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/session-meta", response_model=MatchStateResponse)
    async def post_session_meta(
        match_id: str,
        payload: SessionMetaRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.patch_session_meta(match_id, payload.patch)
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/votes/turn-timer", response_model=MatchStateResponse)
    async def post_turn_timer_vote(
        match_id: str,
        payload: TurnTimerVoteRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.record_turn_timer_vote(match_id, voter_id=payload.voter_id, seconds=payload.seconds)
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/drop-in", response_model=MatchStateResponse)
    async def post_drop_in(
        match_id: str,
        payload: DropInRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.register_drop_in(match_id, bonus_seconds=payload.bonus_seconds, arrivals=payload.arrivals)
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/slot-template", response_model=MatchStateResponse)
    async def post_slot_template(
        match_id: str,
        payload: SlotTemplateRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.resolve_slot_template(
            match_id,
            role_rows=payload.role_rows,
            slot_rows=payload.slot_rows,
            inline_slots=payload.inline_slots,
            source=payload.source,
        )
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/session-history", response_model=MatchStateResponse)
    async def post_session_history(
        match_id: str,
        payload: SessionHistoryRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> MatchStateResponse:
        state = local_store.set_session_history(match_id, payload.patch)
        await publish_state(match_id=match_id, state=state)
        return MatchStateResponse(state=state)

    @app.post("/api/matches/{match_id}/reconcile", response_model=ReconcileResponse)
    async def post_reconcile(
        match_id: str,
        payload: ReconcileRequest,
        local_store: MatchStateStore = Depends(get_store),
    ) -> ReconcileResponse:
        if not payload.assignments and not payload.rooms:
            raise HTTPException(status_code=422, detail="Nothing to reconcile")
        result = await local_store.reconcile(
            match_id,
            payload.assignments,
            rooms=payload.rooms,
            roles=payload.roles,
            slot_layout=payload.slot_layout,
            lookup_roster=roster_lookup,
        )
        state = local_store.read(match_id)
        await publish_state(match_id=match_id, state=state)
        return ReconcileResponse(result=result.to_dict(), state=state)

    @app.post("/api/roles/resolve", response_model=RoleResolutionResponse)
    def post_resolve_roles(payload: ResolveRolesRequest) -> RoleResolutionResponse:
        resolution = resolve_roles_and_layout(
            role_rows=payload.role_rows,
            slot_rows=payload.slot_rows,
            inline_slots=payload.inline_slots,
        )
        return RoleResolutionResponse(
            roles=[role.to_dict() for role in resolution.roles],
            slot_layout=[slot.to_dict() for slot in resolution.slot_layout],
            capacity=build_role_capacity_map(resolution.roles, resolution.slot_layout),
        )

    @app.websocket("/ws/matches/{match_id}")
    async def match_ws(
        websocket: WebSocket,
        match_id: str,
        local_store: MatchStateStore = Depends(get_store),
    ) -> None:
        await websocket_hub.connect(match_id=match_id, websocket=websocket)
        await websocket_hub.send_state(websocket=websocket, match_id=match_id, state=local_store.read(match_id))

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            websocket_hub.disconnect(match_id=match_id, websocket=websocket)

    return app


app = create_app()
