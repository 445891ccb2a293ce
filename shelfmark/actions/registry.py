"""Session-scoped, ordered registry of agent actions.

The list of actions is the only state; every lookup view (by toolcall, by
run) is recomputed from it on each call so views never go stale.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import fields
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from shelfmark.core.lifecycle import OPEN_STATUSES
from shelfmark.core.models import ActionType, AgentAction, item_reference
from shelfmark.core.tags import find_by_raw_tag

Predicate = Callable[[AgentAction], bool]

# Always taken from the incoming snapshot, None included.
OUTCOME_FIELDS = frozenset({"status", "result_data", "error_message", "error_details"})


class ActionRegistry:
    def __init__(self, actions: Optional[Iterable[AgentAction]] = None):
        self._actions: List[AgentAction] = list(actions or [])

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[AgentAction]:
        return iter(list(self._actions))

    def __contains__(self, action_id: str) -> bool:
        return self._index(action_id) is not None

    def _index(self, action_id: str) -> Optional[int]:
        for i, action in enumerate(self._actions):
            if action.id == action_id:
                return i
        return None

    # ── mutation ──

    def add(self, actions: Iterable[AgentAction]) -> None:
        """Append without de-duplication."""
        self._actions.extend(actions)

    def upsert(self, actions: Iterable[AgentAction]) -> List[AgentAction]:
        """Replace-or-append by id.

        Existing entries keep their position. The incoming status and its
        outcome fields always replace the stored ones; other fields are
        merged only when the incoming value is not None. Unknown ids are
        appended.
        """
        changed = []
        for incoming in actions:
            i = self._index(incoming.id)
            if i is None:
                self._actions.append(incoming)
                changed.append(incoming)
                continue
            updates = {
                f.name: getattr(incoming, f.name)
                for f in fields(incoming)
                if f.name in OUTCOME_FIELDS or getattr(incoming, f.name) is not None
            }
            self._actions[i] = self._actions[i].merged(updates)
            changed.append(self._actions[i])
        return changed

    def remove(self, action_ids: Iterable[str]) -> int:
        doomed = set(action_ids)
        before = len(self._actions)
        self._actions = [a for a in self._actions if a.id not in doomed]
        return before - len(self._actions)

    def update_fields(self, updates: Dict[str, Dict[str, Any]]) -> List[str]:
        """Shallow-merge ``{action_id: {field: value}}``. Returns the ids changed."""
        updated = []
        for i, action in enumerate(self._actions):
            patch = updates.get(action.id)
            if patch is None:
                continue
            self._actions[i] = action.merged(patch)
            updated.append(action.id)
        return updated

    def clear(self) -> None:
        self._actions = []

    # ── queries ──

    def get(self, action_id: str) -> Optional[AgentAction]:
        i = self._index(action_id)
        return None if i is None else self._actions[i]

    def find(self, predicate: Predicate) -> List[AgentAction]:
        return [a for a in self._actions if predicate(a)]

    def by_toolcall(self, toolcall_id: str, predicate: Optional[Predicate] = None) -> List[AgentAction]:
        return [
            a for a in self._actions
            if a.toolcall_id == toolcall_id and (predicate is None or predicate(a))
        ]

    def by_run(self, run_id: str, predicate: Optional[Predicate] = None) -> List[AgentAction]:
        return [
            a for a in self._actions
            if a.run_id == run_id and (predicate is None or predicate(a))
        ]

    def grouped_by_toolcall(self) -> Dict[str, List[AgentAction]]:
        groups: Dict[str, List[AgentAction]] = OrderedDict()
        for action in self._actions:
            if action.toolcall_id:
                groups.setdefault(action.toolcall_id, []).append(action)
        return groups

    def grouped_by_run(self) -> Dict[str, List[AgentAction]]:
        groups: Dict[str, List[AgentAction]] = OrderedDict()
        for action in self._actions:
            groups.setdefault(action.run_id, []).append(action)
        return groups

    def snapshot(self) -> List[AgentAction]:
        return list(self._actions)

    def find_note_by_raw_tag(self, run_id: str, raw_tag: str) -> Optional[AgentAction]:
        return find_by_raw_tag(self._actions, run_id, raw_tag)

    def find_pending_create_item(self, source_id: str) -> Optional[AgentAction]:
        """Open create_item proposal for an external reference, if any."""
        for action in self._actions:
            if action.action_type != ActionType.CREATE_ITEM or action.status not in OPEN_STATUSES:
                continue
            item = action.proposed_data.get("item") or {}
            if item.get("source_id") == source_id:
                return action
        return None

    def item_references(self, actions: Optional[Iterable[AgentAction]] = None) -> List[Tuple[Any, str]]:
        """De-duplicated ``(library_id, key)`` pairs the actions touch."""
        seen: Dict[Tuple[Any, str], None] = OrderedDict()
        for action in self._actions if actions is None else actions:
            proposed = action.proposed_data
            if action.is_annotation and proposed.get("library_id") and proposed.get("attachment_key"):
                seen[(proposed["library_id"], proposed["attachment_key"])] = None
            elif action.action_type == ActionType.ZOTERO_NOTE and proposed.get("zotero_key"):
                library_id = proposed.get("library_id")
                if library_id:
                    seen[(library_id, proposed["zotero_key"])] = None
            reference = item_reference(action)
            if reference is not None:
                seen[reference] = None
        return list(seen)
