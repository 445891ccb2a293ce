"""shelfmark package exports.

shelfmark: lifecycle of agent-proposed changes to a reference library
- Normalizer: heterogeneous backend payloads -> canonical AgentAction
- ActionSession: approve, apply, reject, undo and retry with optimistic updates
- Conflict-aware undo that never clobbers fields the user edited by hand

Quick Start:
    from shelfmark import ActionSession, ActionEventRouter

    session = ActionSession(store)
    router = ActionEventRouter(session)
    router.dispatch({"event": "agent_actions", "run_id": "r1", "actions": [...]})
    await session.apply_batch([a.id for a in session.registry.by_run("r1")])
"""

from shelfmark.actions.session import ActionSession
from shelfmark.actions.store import RecordStore
from shelfmark.backend import HostedActionBackend, LocalActionBackend, create_backend
from shelfmark.configs.base import ShelfmarkConfig
from shelfmark.core.conflict import UndoOutcome
from shelfmark.core.models import ActionStatus, ActionType, AgentAction, PendingApproval
from shelfmark.core.normalizer import normalize_actions, to_agent_action
from shelfmark.events import ActionEventRouter
from shelfmark.exceptions import (
    ActionApplyError,
    BackendError,
    InvalidTransitionError,
    ShelfmarkError,
    UnknownActionTypeError,
)
from shelfmark.observability import ActionMetrics, configure_logging

__version__ = "0.1.0"
__all__ = [
    "ActionSession",
    "ActionEventRouter",
    "RecordStore",
    "LocalActionBackend",
    "HostedActionBackend",
    "create_backend",
    "ShelfmarkConfig",
    "configure_logging",
    "ActionMetrics",
    "UndoOutcome",
    "ActionStatus",
    "ActionType",
    "AgentAction",
    "PendingApproval",
    "normalize_actions",
    "to_agent_action",
    "ShelfmarkError",
    "UnknownActionTypeError",
    "InvalidTransitionError",
    "ActionApplyError",
    "BackendError",
]
