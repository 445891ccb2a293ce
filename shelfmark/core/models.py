"""Canonical action model.

An ``AgentAction`` is one agent-proposed mutation against the user's
library. Its ``proposed_data`` and ``result_data`` are plain dicts whose
key set is fixed per ``action_type`` (see ``PROPOSED_FIELDS`` and
``RESULT_FIELDS``); only the normalizer builds them from wire payloads.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    UNDONE = "undone"
    ERROR = "error"


class ActionType(str, Enum):
    HIGHLIGHT_ANNOTATION = "highlight_annotation"
    NOTE_ANNOTATION = "note_annotation"
    ZOTERO_NOTE = "zotero_note"
    CREATE_ITEM = "create_item"
    EDIT_METADATA = "edit_metadata"
    CREATE_COLLECTION = "create_collection"
    ORGANIZE_ITEMS = "organize_items"


ANNOTATION_TYPES = frozenset({ActionType.HIGHLIGHT_ANNOTATION, ActionType.NOTE_ANNOTATION})

# Canonical key sets, in the order the normalizer emits them.
PROPOSED_FIELDS: Dict[ActionType, Tuple[str, ...]] = {
    ActionType.HIGHLIGHT_ANNOTATION: (
        "title", "comment", "library_id", "attachment_key", "raw_sentence_ids",
        "sentence_ids", "text", "color", "highlight_locations",
    ),
    ActionType.NOTE_ANNOTATION: (
        "title", "comment", "library_id", "attachment_key", "raw_sentence_ids",
        "sentence_ids", "note_position",
    ),
    ActionType.ZOTERO_NOTE: ("title", "content", "library_id", "zotero_key", "raw_tag"),
    ActionType.CREATE_ITEM: (
        "item", "reason", "relevance_score", "file_available", "downloaded_url",
        "storage_path", "text_path", "collection_keys", "suggested_tags",
    ),
    ActionType.EDIT_METADATA: ("library_id", "zotero_key", "edits", "creators", "old_creators"),
    ActionType.CREATE_COLLECTION: ("library_id", "library_name", "name", "parent_key", "item_ids"),
    ActionType.ORGANIZE_ITEMS: ("item_ids", "tags", "collections", "current_state"),
}

RESULT_FIELDS: Dict[ActionType, Tuple[str, ...]] = {
    ActionType.HIGHLIGHT_ANNOTATION: ("zotero_key", "library_id", "attachment_key"),
    ActionType.NOTE_ANNOTATION: ("zotero_key", "library_id", "attachment_key"),
    ActionType.ZOTERO_NOTE: ("zotero_key", "library_id", "parent_key"),
    ActionType.CREATE_ITEM: ("zotero_key", "library_id", "attachment_keys", "file_hash", "storage_path"),
    ActionType.EDIT_METADATA: (
        "library_id", "zotero_key", "applied_edits", "rejected_edits", "failed_edits",
        "old_creators", "new_creators",
    ),
    ActionType.CREATE_COLLECTION: ("collection_key", "library_id", "items_added"),
    ActionType.ORGANIZE_ITEMS: (
        "items_modified", "tags_added", "tags_removed", "collections_added",
        "collections_removed", "failed_items",
    ),
}


def coerce_action_type(value: Any) -> Optional[ActionType]:
    if isinstance(value, ActionType):
        return value
    try:
        return ActionType(str(value))
    except ValueError:
        return None


def coerce_status(value: Any, default: ActionStatus = ActionStatus.PENDING) -> ActionStatus:
    if isinstance(value, ActionStatus):
        return value
    try:
        return ActionStatus(str(value).strip().lower())
    except ValueError:
        return default


@dataclass
class AgentAction:
    id: str
    run_id: str
    action_type: ActionType
    status: ActionStatus = ActionStatus.PENDING
    proposed_data: Dict[str, Any] = field(default_factory=dict)
    toolcall_id: Optional[str] = None
    user_id: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_annotation(self) -> bool:
        return self.action_type in ANNOTATION_TYPES

    def merged(self, updates: Dict[str, Any]) -> "AgentAction":
        """Return a copy with ``updates`` shallow-merged over this action."""
        known = {f.name for f in fields(self)}
        clean = {k: v for k, v in updates.items() if k in known and k != "id"}
        if "status" in clean:
            clean["status"] = coerce_status(clean["status"], self.status)
        return replace(self, **clean)

    def copy(self) -> "AgentAction":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "toolcall_id": self.toolcall_id,
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "status": self.status.value,
            "proposed_data": copy.deepcopy(self.proposed_data),
            "result_data": copy.deepcopy(self.result_data),
            "error_message": self.error_message,
            "error_details": self.error_details,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def has_applied_item(action: AgentAction) -> bool:
    """True when an applied action points at a record in the host store."""
    result = action.result_data or {}
    return (
        action.status == ActionStatus.APPLIED
        and bool(result.get("zotero_key"))
        and bool(result.get("library_id"))
    )


def item_reference(action: AgentAction) -> Optional[Tuple[int, str]]:
    if not has_applied_item(action):
        return None
    return (action.result_data["library_id"], action.result_data["zotero_key"])


@dataclass
class PendingApproval:
    """An approval request awaiting a user decision.

    May exist before the matching ``AgentAction`` has been registered.
    """

    action_id: str
    toolcall_id: str
    action_type: str
    action_data: Dict[str, Any] = field(default_factory=dict)
    current_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "toolcall_id": self.toolcall_id,
            "action_type": self.action_type,
            "action_data": self.action_data,
            "current_value": self.current_value,
        }


@dataclass
class AckLink:
    """One acknowledgement entry: an action id and the result it produced."""

    action_id: str
    result_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"action_id": self.action_id, "result_data": self.result_data}


@dataclass
class AckError:
    action_id: str
    code: str
    detail: str


@dataclass
class AckResponse:
    success: bool
    run_id: str
    updated: int = 0
    errors: List[AckError] = field(default_factory=list)
