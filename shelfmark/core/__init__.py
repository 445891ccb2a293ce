from shelfmark.core.conflict import UndoOutcome, undo_edit_metadata
from shelfmark.core.lifecycle import TRANSITIONS, can_transition
from shelfmark.core.models import ActionStatus, ActionType, AgentAction, PendingApproval
from shelfmark.core.normalizer import normalize_actions, to_agent_action, to_result_data
from shelfmark.core.tags import find_by_raw_tag, tags_match

__all__ = [
    "UndoOutcome",
    "undo_edit_metadata",
    "TRANSITIONS",
    "can_transition",
    "ActionStatus",
    "ActionType",
    "AgentAction",
    "PendingApproval",
    "normalize_actions",
    "to_agent_action",
    "to_result_data",
    "find_by_raw_tag",
    "tags_match",
]
