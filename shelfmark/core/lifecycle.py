"""Action status state machine."""

from __future__ import annotations

from typing import Dict, FrozenSet

from shelfmark.core.models import ActionStatus

# Allowed status transitions (lifecycle order)
TRANSITIONS: Dict[ActionStatus, FrozenSet[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.APPLIED, ActionStatus.REJECTED, ActionStatus.ERROR}),
    ActionStatus.APPLIED: frozenset({ActionStatus.UNDONE, ActionStatus.ERROR}),
    ActionStatus.REJECTED: frozenset({ActionStatus.PENDING}),
    ActionStatus.UNDONE: frozenset({ActionStatus.PENDING}),
    # error -> error refreshes the message of a failed retry
    ActionStatus.ERROR: frozenset({ActionStatus.APPLIED, ActionStatus.REJECTED, ActionStatus.ERROR}),
}

APPLYABLE_STATUSES = frozenset({ActionStatus.PENDING, ActionStatus.ERROR})
RETRYABLE_STATUSES = frozenset({ActionStatus.REJECTED, ActionStatus.UNDONE})
OPEN_STATUSES = frozenset({
    ActionStatus.PENDING, ActionStatus.UNDONE, ActionStatus.ERROR, ActionStatus.REJECTED,
})


def can_transition(current: ActionStatus, target: ActionStatus) -> bool:
    return target in TRANSITIONS.get(ActionStatus(current), frozenset())


def clears_outcome(target: ActionStatus) -> bool:
    """Statuses that drop ``result_data`` and ``error_message`` on entry."""
    return target in (ActionStatus.REJECTED, ActionStatus.UNDONE, ActionStatus.PENDING)
