"""Per-type apply/undo of agent actions against the host ``RecordStore``.

Every handler returns a canonical ``result_data`` payload from ``apply`` and
raises ``ActionApplyError`` when the host side could not be changed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

from shelfmark.actions.store import RecordStore
from shelfmark.core.conflict import undo_edit_metadata
from shelfmark.core.models import ANNOTATION_TYPES, ActionType, AgentAction, coerce_action_type, item_reference
from shelfmark.core.normalizer import to_number, to_result_data
from shelfmark.exceptions import ActionApplyError, UnknownActionTypeError

logger = logging.getLogger(__name__)

NON_REGULAR_ITEM_TYPES = frozenset({"attachment", "note", "annotation"})


def split_item_id(item_id: str, default_library_id: int) -> Tuple[int, str]:
    """Split ``"<library_id>-<key>"``; a bare key uses the default library."""
    head, sep, tail = str(item_id).partition("-")
    if sep:
        library_id = to_number(head)
        if library_id is not None:
            return int(library_id), tail
    return default_library_id, str(item_id)


def _require(value: Any, message: str, action: AgentAction) -> Any:
    if value in (None, "", 0):
        raise ActionApplyError(message, action_id=action.id)
    return value


class ActionHandler(ABC):
    action_type: ActionType

    def __init__(self, store: RecordStore):
        self.store = store

    @abstractmethod
    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def undo(self, action: AgentAction) -> Any:
        pass


class AnnotationHandler(ActionHandler):
    """highlight_annotation and note_annotation."""

    def __init__(self, store: RecordStore, action_type: ActionType):
        super().__init__(store)
        self.action_type = action_type

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        proposed = action.proposed_data
        library_id = _require(proposed.get("library_id"), "Annotation has no library", action)
        attachment_key = _require(proposed.get("attachment_key"), "Annotation has no attachment", action)
        annotation = {k: v for k, v in proposed.items() if k not in ("library_id", "attachment_key")}
        annotation["annotation_type"] = (
            "highlight" if self.action_type == ActionType.HIGHLIGHT_ANNOTATION else "note"
        )
        key = await self.store.create_annotation(library_id, attachment_key, annotation)
        return {"zotero_key": key, "library_id": library_id, "attachment_key": attachment_key}

    async def undo(self, action: AgentAction) -> None:
        result = action.result_data or {}
        library_id = _require(result.get("library_id"), "No result data available for undo", action)
        key = _require(result.get("zotero_key"), "No result data available for undo", action)
        if not await self.store.erase_item(library_id, key):
            logger.info("Annotation %s-%s already deleted", library_id, key)


class NoteHandler(ActionHandler):
    action_type = ActionType.ZOTERO_NOTE

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        proposed = action.proposed_data
        library_id = proposed.get("library_id") or self.store.default_library_id
        parent_key = proposed.get("zotero_key")
        if parent_key and not await self.store.get_item(library_id, parent_key):
            raise ActionApplyError(f"Parent item not found: {library_id}-{parent_key}", action_id=action.id)
        key = await self.store.create_note(
            library_id, parent_key, proposed.get("title") or "", proposed.get("content") or ""
        )
        return {"zotero_key": key, "library_id": library_id, "parent_key": parent_key}

    async def undo(self, action: AgentAction) -> None:
        result = action.result_data or {}
        library_id = _require(result.get("library_id"), "No result data available for undo", action)
        key = _require(result.get("zotero_key"), "No result data available for undo", action)
        if not await self.store.erase_item(library_id, key):
            logger.info("Note %s-%s already deleted", library_id, key)


class CreateItemHandler(ActionHandler):
    action_type = ActionType.CREATE_ITEM

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        raw = await self.store.create_item(action.proposed_data)
        result = to_result_data(ActionType.CREATE_ITEM, raw)
        if result is None:
            raise ActionApplyError("Item import returned no item key", action_id=action.id)
        if not result.get("library_id"):
            result["library_id"] = self.store.default_library_id
        return result

    async def undo(self, action: AgentAction) -> None:
        result = action.result_data or {}
        key = _require(result.get("zotero_key"), "No result data available for undo", action)
        library_id = result.get("library_id") or self.store.default_library_id
        # A missing item was deleted by the user already; nothing to undo.
        if not await self.store.erase_item(library_id, key):
            logger.info("Imported item %s-%s already deleted", library_id, key)


class EditMetadataHandler(ActionHandler):
    action_type = ActionType.EDIT_METADATA

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        proposed = action.proposed_data
        library_id = proposed.get("library_id")
        zotero_key = proposed.get("zotero_key")
        item = await self.store.get_item(library_id, zotero_key)
        if not item:
            raise ActionApplyError(f"Item not found: {library_id}-{zotero_key}", action_id=action.id)

        applied_edits: List[Dict[str, Any]] = []
        failed_edits: List[Dict[str, Any]] = []
        for edit in proposed.get("edits") or []:
            try:
                await self.store.update_item(
                    library_id, zotero_key, fields={edit["field"]: edit.get("new_value")}
                )
            except Exception as e:
                failed_edits.append({"field": edit["field"], "error": str(e)})
                continue
            applied_edits.append({"field": edit["field"], "applied_value": edit.get("new_value")})

        old_creators = new_creators = None
        if proposed.get("creators") is not None:
            old_creators = proposed.get("old_creators") or item.get("creators") or []
            new_creators = proposed["creators"]
            await self.store.update_item(library_id, zotero_key, creators=new_creators)

        if failed_edits:
            raise ActionApplyError(
                "Some edits failed: " + ", ".join(e["field"] for e in failed_edits),
                action_id=action.id,
            )
        logger.info("Applied %d edit(s) to %s-%s", len(applied_edits), library_id, zotero_key)
        return {
            "library_id": library_id,
            "zotero_key": zotero_key,
            "applied_edits": applied_edits,
            "rejected_edits": [],
            "failed_edits": failed_edits,
            "old_creators": old_creators,
            "new_creators": new_creators,
        }

    async def undo(self, action: AgentAction, force: bool = False):
        return await undo_edit_metadata(self.store, action, force=force)


class CreateCollectionHandler(ActionHandler):
    action_type = ActionType.CREATE_COLLECTION

    async def _resolve_library(self, action: AgentAction) -> int:
        proposed = action.proposed_data
        raw_library_id = proposed.get("library_id")
        if not raw_library_id:
            name = proposed.get("library_name")
            if not name:
                return self.store.default_library_id
            library_id = await self.store.resolve_library(name)
            if not library_id or library_id <= 0:
                raise ActionApplyError(f'Library not found: "{name}"', action_id=action.id)
            return library_id
        if raw_library_id < 0 or int(raw_library_id) != raw_library_id:
            raise ActionApplyError(f"Invalid library ID: {raw_library_id}", action_id=action.id)
        return int(raw_library_id)

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        proposed = action.proposed_data
        library_id = await self._resolve_library(action)
        parent_key = proposed.get("parent_key")
        if parent_key and not await self.store.get_collection(library_id, parent_key):
            raise ActionApplyError(f"Parent collection not found: {parent_key}", action_id=action.id)

        collection_key = await self.store.create_collection(library_id, proposed.get("name") or "", parent_key)
        logger.info("Created collection %r (%s-%s)", proposed.get("name"), library_id, collection_key)

        keys = []
        for item_id in proposed.get("item_ids") or []:
            item_library, key = split_item_id(item_id, library_id)
            item = await self.store.get_item(item_library, key)
            if item and item.get("item_type") not in NON_REGULAR_ITEM_TYPES:
                keys.append(key)
        items_added = 0
        if keys:
            items_added = await self.store.add_items_to_collection(library_id, collection_key, keys)
        return {"collection_key": collection_key, "library_id": library_id, "items_added": items_added}

    async def undo(self, action: AgentAction) -> None:
        result = action.result_data or {}
        library_id = _require(result.get("library_id"), "No result data available for undo", action)
        key = _require(result.get("collection_key"), "No result data available for undo", action)
        if not await self.store.erase_collection(library_id, key):
            logger.info("Collection %s-%s not found, may have been deleted", library_id, key)


class OrganizeItemsHandler(ActionHandler):
    """Tag and collection membership changes across a set of items.

    The result records the changes actually made (not the requested ones),
    so the fallback undo path never removes a tag the item already had.
    """

    action_type = ActionType.ORGANIZE_ITEMS

    async def apply(self, action: AgentAction) -> Dict[str, Any]:
        proposed = action.proposed_data
        tags = proposed.get("tags") or {}
        collections = proposed.get("collections") or {}
        items_modified = 0
        failed_items: Dict[str, str] = {}
        tags_added: List[str] = []
        tags_removed: List[str] = []
        collections_added: List[str] = []
        collections_removed: List[str] = []

        for item_id in proposed.get("item_ids") or []:
            library_id, key = split_item_id(item_id, self.store.default_library_id)
            try:
                item = await self.store.get_item(library_id, key)
                if not item:
                    failed_items[item_id] = "Item not found"
                    continue
                existing_tags = set(item.get("tags") or [])
                existing_collections = set(item.get("collections") or [])
                add_tags = [t for t in tags.get("add") or [] if t not in existing_tags]
                remove_tags = [t for t in tags.get("remove") or [] if t in existing_tags]
                add_collections = []
                for coll_key in collections.get("add") or []:
                    if coll_key not in existing_collections and await self.store.get_collection(library_id, coll_key):
                        add_collections.append(coll_key)
                remove_collections = [c for c in collections.get("remove") or [] if c in existing_collections]
                if not (add_tags or remove_tags or add_collections or remove_collections):
                    continue
                await self.store.update_item(
                    library_id,
                    key,
                    add_tags=add_tags,
                    remove_tags=remove_tags,
                    add_collections=add_collections,
                    remove_collections=remove_collections,
                )
            except Exception as e:
                failed_items[item_id] = str(e)
                continue
            items_modified += 1
            for target, values in (
                (tags_added, add_tags),
                (tags_removed, remove_tags),
                (collections_added, add_collections),
                (collections_removed, remove_collections),
            ):
                target.extend(v for v in values if v not in target)

        if failed_items and items_modified == 0:
            raise ActionApplyError("All items failed: " + ", ".join(failed_items.values()), action_id=action.id)
        logger.info("Modified %d item(s), %d failure(s)", items_modified, len(failed_items))
        return {
            "items_modified": items_modified,
            "tags_added": tags_added or None,
            "tags_removed": tags_removed or None,
            "collections_added": collections_added or None,
            "collections_removed": collections_removed or None,
            "failed_items": failed_items or None,
        }

    async def undo(self, action: AgentAction) -> None:
        proposed = action.proposed_data
        result = action.result_data or {}
        current_state = proposed.get("current_state") or {}
        tags = proposed.get("tags") or {}
        collections = proposed.get("collections") or {}

        for item_id in proposed.get("item_ids") or []:
            library_id, key = split_item_id(item_id, self.store.default_library_id)
            original = current_state.get(item_id)
            if original is not None:
                remove_tags = [t for t in tags.get("add") or [] if t not in original["tags"]]
                add_tags = [t for t in tags.get("remove") or [] if t in original["tags"]]
                remove_collections = [c for c in collections.get("add") or [] if c not in original["collections"]]
                add_collections = [c for c in collections.get("remove") or [] if c in original["collections"]]
            elif result:
                remove_tags = result.get("tags_added") or []
                add_tags = result.get("tags_removed") or []
                remove_collections = result.get("collections_added") or []
                add_collections = result.get("collections_removed") or []
            else:
                logger.info("No saved state or result for %s, skipping undo", item_id)
                continue
            try:
                if not await self.store.get_item(library_id, key):
                    logger.info("Item not found during undo: %s", item_id)
                    continue
                await self.store.update_item(
                    library_id,
                    key,
                    add_tags=add_tags,
                    remove_tags=remove_tags,
                    add_collections=add_collections,
                    remove_collections=remove_collections,
                )
            except Exception as e:
                logger.warning("Failed to undo %s: %s", item_id, e)


class HandlerFactory:
    @classmethod
    def create(cls, action_type: Any, store: RecordStore) -> ActionHandler:
        resolved = coerce_action_type(action_type)
        if resolved in ANNOTATION_TYPES:
            return AnnotationHandler(store, resolved)
        if resolved == ActionType.ZOTERO_NOTE:
            return NoteHandler(store)
        if resolved == ActionType.CREATE_ITEM:
            return CreateItemHandler(store)
        if resolved == ActionType.EDIT_METADATA:
            return EditMetadataHandler(store)
        if resolved == ActionType.CREATE_COLLECTION:
            return CreateCollectionHandler(store)
        if resolved == ActionType.ORGANIZE_ITEMS:
            return OrganizeItemsHandler(store)
        raise UnknownActionTypeError(action_type)


async def validate_applied_action(action: AgentAction, store: RecordStore) -> bool:
    """False when the record an applied action created is gone from the store."""
    reference = item_reference(action)
    if reference is None:
        return True
    item = await store.get_item(*reference)
    if not item:
        return False
    if action.is_annotation and item.get("item_type") != "annotation":
        return False
    return True
