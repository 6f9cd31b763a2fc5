"""Backend package for rank match assignment and session state."""

from .async_fill import build_async_fill_snapshot, normalize_realtime_mode
from .config import LobbySettings, load_settings
from .meta import CLEAR, UNCHANGED, SessionMetaPatch, SetValue, apply_turn_timer_vote, merge_session_meta
from .participants import guess_owner_participant, lookup_participant_role, normalize_participant_rows
from .reconcile import reconcile_assignments
from .records import sanitize_session_history, sanitize_slot_template
from .roles import build_role_capacity_map, resolve_roles_and_layout
from .store import InMemorySessionStorage, MatchStateStore, PostgresSessionStorage, SessionStorage, create_storage

__all__ = [
    "apply_turn_timer_vote",
    "build_async_fill_snapshot",
    "build_role_capacity_map",
    "CLEAR",
    "create_storage",
    "guess_owner_participant",
    "InMemorySessionStorage",
    "load_settings",
    "LobbySettings",
    "lookup_participant_role",
    "MatchStateStore",
    "merge_session_meta",
    "normalize_participant_rows",
    "normalize_realtime_mode",
    "PostgresSessionStorage",
    "reconcile_assignments",
    "resolve_roles_and_layout",
    "sanitize_session_history",
    "sanitize_slot_template",
    "SessionMetaPatch",
    "SessionStorage",
    "SetValue",
    "UNCHANGED",
]
