"""In-flight approval requests awaiting a user decision."""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Union

from shelfmark.core.models import ActionType, AgentAction, PendingApproval
from shelfmark.core.normalizer import to_pending_approval


class ApprovalTracker:
    def __init__(self):
        self._pending: Dict[str, PendingApproval] = OrderedDict()

    def add(self, event: Union[PendingApproval, Mapping[str, Any]]) -> PendingApproval:
        approval = event if isinstance(event, PendingApproval) else to_pending_approval(event)
        self._pending[approval.action_id] = approval
        return approval

    def remove(self, action_id: str) -> bool:
        return self._pending.pop(action_id, None) is not None

    def clear(self) -> None:
        self._pending.clear()

    def get(self, action_id: str) -> Optional[PendingApproval]:
        return self._pending.get(action_id)

    def find_by_toolcall(self, toolcall_id: str) -> Optional[PendingApproval]:
        for approval in self._pending.values():
            if approval.toolcall_id == toolcall_id:
                return approval
        return None

    def has_any(self) -> bool:
        return bool(self._pending)

    def values(self) -> List[PendingApproval]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._pending


async def build_pending_approval(action: AgentAction, store) -> Optional[PendingApproval]:
    """Rebuild the approval request for a registered action.

    Used when a run is rehydrated and its approval events were never seen.
    Actions without a toolcall id are not surfaced for individual approval.
    """
    if not action.toolcall_id:
        return None

    data = action.proposed_data or {}
    current_value: Any = None

    if action.action_type == ActionType.EDIT_METADATA:
        library_id = data.get("library_id")
        zotero_key = data.get("zotero_key")
        edits = data.get("edits") or []
        if library_id and zotero_key and edits:
            item = await store.get_item(library_id, zotero_key)
            if item:
                live = item.get("fields") or {}
                current_value = {}
                for edit in edits:
                    field_name = edit.get("field")
                    if not field_name:
                        continue
                    value = live.get(field_name)
                    current_value[field_name] = str(value) if value else None
    elif action.action_type == ActionType.CREATE_COLLECTION:
        library_id = data.get("library_id")
        if library_id:
            current_value = {
                "library_name": await store.get_library_name(library_id) or "Unknown Library",
                "parent_key": data.get("parent_key"),
                "item_count": len(data.get("item_ids") or []),
            }
    elif action.action_type == ActionType.ORGANIZE_ITEMS:
        current_value = data.get("current_state")

    return PendingApproval(
        action_id=action.id,
        toolcall_id=action.toolcall_id,
        action_type=action.action_type.value,
        action_data=data,
        current_value=current_value,
    )
