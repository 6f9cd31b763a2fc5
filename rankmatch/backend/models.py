"""Domain models for roster normalisation, role layouts and reconciliation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


DEFAULT_PARTICIPANT_SCORE = 1000

REMOVAL_REASONS = ("role_mismatch", "duplicate_role", "duplicate_ambiguous", "exceeds_capacity")


@dataclass(frozen=True)
class ParticipantRecord:
    owner_id: str
    hero_id: str | None = None
    hero_ids: tuple[str, ...] = ()
    role: str = ""
    score: int = DEFAULT_PARTICIPANT_SCORE
    rating: int | None = None
    slot_index: int | None = None
    status: str = ""
    updated_at: int = 0
    source: str = "participant"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "heroId": self.hero_id,
            "heroIds": list(self.hero_ids),
            "role": self.role,
            "score": self.score,
            "rating": self.rating,
            "slotIndex": self.slot_index,
            "status": self.status,
            "updatedAt": self.updated_at,
            "source": self.source,
        }


@dataclass(frozen=True)
class RoleDeclaration:
    name: str
    slot_count: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "slotCount": self.slot_count}


@dataclass(frozen=True)
class SlotLayoutEntry:
    slot_index: int
    role: str
    hero_id: str | None = None
    owner_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "slotIndex": self.slot_index,
            "role": self.role,
            "heroId": self.hero_id,
            "ownerId": self.owner_id,
        }


@dataclass(frozen=True)
class RoleResolution:
    roles: list[RoleDeclaration]
    slot_layout: list[SlotLayoutEntry]


@dataclass(frozen=True)
class RemovedMember:
    hero_id: str | None
    owner_id: str | None
    role: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "heroId": self.hero_id,
            "ownerId": self.owner_id,
            "role": self.role,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    assignments: list[dict[str, Any]]
    rooms: list[dict[str, Any]]
    removed_members: list[RemovedMember] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignments": self.assignments,
            "rooms": self.rooms,
            "removedMembers": [member.to_dict() for member in self.removed_members],
        }


@dataclass(frozen=True)
class SeatLimit:
    allowed: int
    total: int


@dataclass(frozen=True)
class AsyncFillSnapshot:
    mode: str
    host_owner_id: str | None
    host_role: str | None
    seat_limit: SeatLimit
    seat_indexes: list[int]
    pending_seat_indexes: list[int]
    assigned: list[dict[str, Any]]
    overflow: list[dict[str, Any]]
    fill_queue: list[dict[str, Any]]
    pool_size: int
    generated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "hostOwnerId": self.host_owner_id,
            "hostRole": self.host_role,
            "seatLimit": {"allowed": self.seat_limit.allowed, "total": self.seat_limit.total},
            "seatIndexes": list(self.seat_indexes),
            "pendingSeatIndexes": list(self.pending_seat_indexes),
            "assigned": [dict(entry) for entry in self.assigned],
            "overflow": [dict(entry) for entry in self.overflow],
            "fillQueue": [dict(entry) for entry in self.fill_queue],
            "poolSize": self.pool_size,
            "generatedAt": self.generated_at,
        }
