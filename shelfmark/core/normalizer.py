"""Normalization of raw backend payloads into canonical actions.

Backend payloads arrive with keys in snake_case or camelCase depending on
the backend version. Every reader here prefers the snake_case key, falls
back to the camelCase alias, then to a default. Nothing in this module
raises on a missing field; an unknown ``action_type`` is the only hard
failure because the action model is a closed set.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

from shelfmark.core.models import (
    ANNOTATION_TYPES,
    ActionType,
    AgentAction,
    PendingApproval,
    coerce_action_type,
    coerce_status,
)
from shelfmark.exceptions import UnknownActionTypeError

logger = logging.getLogger(__name__)

COORD_TOPLEFT = "t"
COORD_BOTTOMLEFT = "b"


# ----------------------------------------------------------------------
# Primitive readers
# ----------------------------------------------------------------------

def pick(data: Optional[Mapping[str, Any]], *keys: str, default: Any = None) -> Any:
    """Return the first non-None value among ``keys``."""
    if not isinstance(data, Mapping):
        return default
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


_INFINITY_SPELLINGS = ("inf", "infinity")


def to_number(value: Any) -> Optional[float]:
    """Coerce like JavaScript ``Number(value)``; unparseable input gives None.

    ``None`` also gives None so that absence is never reported as zero.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        # Only "Infinity" spells infinity; digit separators are rejected.
        unsigned = text.lstrip("+-")
        if "_" in text or (unsigned.lower() in _INFINITY_SPELLINGS and unsigned != "Infinity"):
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def _num(value: Any, default: Any = 0) -> Optional[float]:
    if value is None:
        value = default
    return to_number(value)


def _str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


# ----------------------------------------------------------------------
# Annotation geometry
# ----------------------------------------------------------------------

def normalize_sentence_ids(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if isinstance(v, str)]
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return []


def normalize_bounding_box(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    coords = [to_number(raw.get(k)) for k in ("l", "t", "r", "b")]
    if any(c is None for c in coords):
        return None
    origin = raw.get("coord_origin") or raw.get("coordOrigin")
    coord_origin = COORD_TOPLEFT if origin in (COORD_TOPLEFT, "TOPLEFT") else COORD_BOTTOMLEFT
    left, top, right, bottom = coords
    return {"l": left, "t": top, "r": right, "b": bottom, "coord_origin": coord_origin}


def normalize_page_locations(raw: Any) -> Optional[List[Dict[str, Any]]]:
    locations = pick(raw, "highlight_locations", "highlightLocations", "locations")
    if not isinstance(locations, (list, tuple)) or not locations:
        return None

    normalized = []
    for loc in locations:
        page_index = to_number(pick(loc, "page_idx", "pageIndex", "page_index", "pageIdx", "page"))
        if page_index is None:
            continue
        raw_boxes = pick(loc, "boxes", "boundingBoxes", "bboxes", "rects", default=[])
        boxes = []
        if isinstance(raw_boxes, (list, tuple)):
            boxes = [b for b in (normalize_bounding_box(rb) for rb in raw_boxes) if b]
        normalized.append({"page_idx": page_index, "boxes": boxes})
    return normalized


def normalize_note_position(raw: Any) -> Optional[Dict[str, Any]]:
    position = pick(raw, "note_position", "notePosition")
    if not isinstance(position, Mapping):
        return None
    raw_page = pick(position, "page_index", "pageIndex", "page_idx")
    side = position.get("side")
    if raw_page is None or not side:
        return None
    page_index = to_number(raw_page)
    if page_index is None:
        return None
    return {
        "page_index": page_index,
        "side": "left" if side == "left" else "right",
        "x": _num(position.get("x")),
        "y": _num(position.get("y")),
    }


def _normalize_creators(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(value, (list, tuple)):
        return None
    creators = []
    for creator in value:
        if not isinstance(creator, Mapping):
            continue
        entry = {
            "creator_type": _str(pick(creator, "creator_type", "creatorType"), "author"),
        }
        name = pick(creator, "name")
        if name is not None:
            entry["name"] = _str(name)
        else:
            entry["first_name"] = _str(pick(creator, "first_name", "firstName"))
            entry["last_name"] = _str(pick(creator, "last_name", "lastName"))
        creators.append(entry)
    return creators


# ----------------------------------------------------------------------
# Proposed data
# ----------------------------------------------------------------------

def _annotation_proposed(data: Mapping[str, Any], action_type: ActionType) -> Dict[str, Any]:
    proposed = {
        "title": _str(data.get("title")),
        "comment": _str(data.get("comment")),
        "library_id": _num(pick(data, "library_id", "libraryId")),
        "attachment_key": _str(pick(data, "attachment_key", "attachmentKey")),
        "raw_sentence_ids": pick(data, "raw_sentence_ids", "rawSentenceIds"),
        "sentence_ids": normalize_sentence_ids(pick(data, "sentence_ids", "sentenceIds")),
    }
    if action_type == ActionType.HIGHLIGHT_ANNOTATION:
        proposed["text"] = _str(data.get("text"))
        proposed["color"] = pick(data, "color", "highlight_color", "highlightColor")
        proposed["highlight_locations"] = normalize_page_locations(data)
    else:
        proposed["note_position"] = normalize_note_position(data)
    return proposed


def _zotero_note_proposed(data: Mapping[str, Any]) -> Dict[str, Any]:
    raw_tag = pick(data, "raw_tag", "rawTag")
    content = data.get("content")
    return {
        "title": _str(data.get("title")),
        "content": content if content is None or isinstance(content, str) else str(content),
        "library_id": to_number(pick(data, "library_id", "libraryId")),
        "zotero_key": _opt_str(pick(data, "zotero_key", "zoteroKey")),
        "raw_tag": raw_tag if isinstance(raw_tag, str) else None,
    }


def _create_item_proposed(data: Mapping[str, Any]) -> Dict[str, Any]:
    item = data.get("item")
    return {
        "item": dict(item) if isinstance(item, Mapping) else {},
        "reason": data.get("reason"),
        "relevance_score": pick(data, "relevance_score", "relevanceScore"),
        "file_available": bool(pick(data, "file_available", "fileAvailable", default=False)),
        "downloaded_url": pick(data, "downloaded_url", "downloadedUrl"),
        "storage_path": pick(data, "storage_path", "storagePath"),
        "text_path": pick(data, "text_path", "textPath"),
        "collection_keys": pick(data, "collection_keys", "collectionKeys"),
        "suggested_tags": pick(data, "suggested_tags", "suggestedTags"),
    }


def _edit_metadata_proposed(data: Mapping[str, Any]) -> Dict[str, Any]:
    edits = []
    for edit in _list(data.get("edits")):
        if not isinstance(edit, Mapping):
            continue
        edits.append({
            "field": _str(edit.get("field")),
            "old_value": pick(edit, "old_value", "oldValue"),
            "new_value": pick(edit, "new_value", "newValue"),
        })
    return {
        "library_id": _num(pick(data, "library_id", "libraryId")),
        "zotero_key": _str(pick(data, "zotero_key", "zoteroKey")),
        "edits": edits,
        "creators": _normalize_creators(pick(data, "creators", "new_creators", "newCreators")),
        "old_creators": _normalize_creators(pick(data, "old_creators", "oldCreators")),
    }


def _create_collection_proposed(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "library_id": _num(pick(data, "library_id", "libraryId")),
        "library_name": pick(data, "library_name", "libraryName"),
        "name": _str(data.get("name")),
        "parent_key": pick(data, "parent_key", "parentKey"),
        "item_ids": _list(pick(data, "item_ids", "itemIds")),
    }


def _delta(value: Any) -> Optional[Dict[str, List[str]]]:
    if not isinstance(value, Mapping):
        return None
    return {"add": _list(value.get("add")), "remove": _list(value.get("remove"))}


def _organize_items_proposed(data: Mapping[str, Any]) -> Dict[str, Any]:
    state = pick(data, "current_state", "currentState")
    current_state = None
    if isinstance(state, Mapping):
        current_state = {
            str(item_id): {
                "tags": _list(pick(entry, "tags")),
                "collections": _list(pick(entry, "collections")),
            }
            for item_id, entry in state.items()
            if isinstance(entry, Mapping)
        }
    return {
        "item_ids": _list(pick(data, "item_ids", "itemIds")),
        "tags": _delta(data.get("tags")),
        "collections": _delta(data.get("collections")),
        "current_state": current_state,
    }


def to_proposed_data(action_type: ActionType, raw: Any) -> Dict[str, Any]:
    data = raw if isinstance(raw, Mapping) else {}
    if action_type in ANNOTATION_TYPES:
        return _annotation_proposed(data, action_type)
    if action_type == ActionType.ZOTERO_NOTE:
        return _zotero_note_proposed(data)
    if action_type == ActionType.CREATE_ITEM:
        return _create_item_proposed(data)
    if action_type == ActionType.EDIT_METADATA:
        return _edit_metadata_proposed(data)
    if action_type == ActionType.CREATE_COLLECTION:
        return _create_collection_proposed(data)
    if action_type == ActionType.ORGANIZE_ITEMS:
        return _organize_items_proposed(data)
    raise UnknownActionTypeError(action_type)


# ----------------------------------------------------------------------
# Result data
# ----------------------------------------------------------------------

def to_result_data(action_type: ActionType, raw: Any) -> Optional[Dict[str, Any]]:
    """Build the canonical result payload, or None when it cannot be identified."""
    if not isinstance(raw, Mapping):
        return None
    action_type = coerce_action_type(action_type)

    if action_type in ANNOTATION_TYPES:
        key = pick(raw, "zotero_key", "zoteroKey")
        if not key:
            return None
        return {
            "zotero_key": _str(key),
            "library_id": _num(pick(raw, "library_id", "libraryId")),
            "attachment_key": _str(pick(raw, "attachment_key", "attachmentKey")),
        }

    if action_type == ActionType.ZOTERO_NOTE:
        key = pick(raw, "zotero_key", "zoteroKey")
        if not key:
            return None
        result = {"zotero_key": _str(key), "library_id": _num(pick(raw, "library_id", "libraryId"))}
        parent_key = pick(raw, "parent_key", "parentKey")
        if parent_key:
            result["parent_key"] = _str(parent_key)
        return result

    if action_type == ActionType.CREATE_ITEM:
        key = pick(raw, "zotero_key", "zoteroKey", "item_key", "itemKey")
        if not key:
            return None
        return {
            "zotero_key": _str(key),
            "library_id": _num(pick(raw, "library_id", "libraryId")),
            "attachment_keys": pick(raw, "attachment_keys", "attachmentKeys"),
            "file_hash": pick(raw, "file_hash", "fileHash"),
            "storage_path": pick(raw, "storage_path", "storagePath"),
        }

    if action_type == ActionType.EDIT_METADATA:
        key = pick(raw, "zotero_key", "zoteroKey")
        if not key:
            return None
        applied = []
        for edit in _list(pick(raw, "applied_edits", "appliedEdits")):
            if isinstance(edit, Mapping):
                applied.append({
                    "field": _str(edit.get("field")),
                    "applied_value": pick(edit, "applied_value", "appliedValue"),
                })
        failed = []
        for edit in _list(pick(raw, "failed_edits", "failedEdits")):
            if isinstance(edit, Mapping):
                failed.append({"field": _str(edit.get("field")), "error": _str(edit.get("error"))})
        return {
            "library_id": _num(pick(raw, "library_id", "libraryId")),
            "zotero_key": _str(key),
            "applied_edits": applied,
            "rejected_edits": _list(pick(raw, "rejected_edits", "rejectedEdits")),
            "failed_edits": failed,
            "old_creators": _normalize_creators(pick(raw, "old_creators", "oldCreators")),
            "new_creators": _normalize_creators(pick(raw, "new_creators", "newCreators")),
        }

    if action_type == ActionType.CREATE_COLLECTION:
        key = pick(raw, "collection_key", "collectionKey")
        if not key:
            return None
        return {
            "collection_key": _str(key),
            "library_id": _num(pick(raw, "library_id", "libraryId")),
            "items_added": _num(pick(raw, "items_added", "itemsAdded")),
        }

    if action_type == ActionType.ORGANIZE_ITEMS:
        modified = to_number(pick(raw, "items_modified", "itemsModified"))
        if modified is None:
            return None
        failed_items = pick(raw, "failed_items", "failedItems")
        return {
            "items_modified": modified,
            "tags_added": pick(raw, "tags_added", "tagsAdded"),
            "tags_removed": pick(raw, "tags_removed", "tagsRemoved"),
            "collections_added": pick(raw, "collections_added", "collectionsAdded"),
            "collections_removed": pick(raw, "collections_removed", "collectionsRemoved"),
            "failed_items": dict(failed_items) if isinstance(failed_items, Mapping) else None,
        }

    return None


# ----------------------------------------------------------------------
# Actions and approvals
# ----------------------------------------------------------------------

def to_agent_action(raw: Mapping[str, Any]) -> AgentAction:
    """Normalize one raw backend payload into an ``AgentAction``."""
    raw_type = pick(raw, "action_type", "actionType")
    action_type = coerce_action_type(raw_type)
    if action_type is None:
        raise UnknownActionTypeError(raw_type)

    proposed = to_proposed_data(action_type, pick(raw, "proposed_data", "proposedData", default={}))
    raw_result = pick(raw, "result_data", "resultData")
    result = to_result_data(action_type, raw_result) if raw_result is not None else None
    if raw_result is not None and result is None:
        logger.debug("Discarding unidentifiable result_data for action %s", raw.get("id"))

    return AgentAction(
        id=_str(raw.get("id")),
        run_id=_str(pick(raw, "run_id", "runId")),
        toolcall_id=_opt_str(pick(raw, "toolcall_id", "toolcallId")),
        user_id=_opt_str(pick(raw, "user_id", "userId")),
        action_type=action_type,
        status=coerce_status(raw.get("status")),
        proposed_data=proposed,
        result_data=result,
        error_message=pick(raw, "error_message", "errorMessage"),
        error_details=pick(raw, "error_details", "errorDetails", "validationErrors"),
        created_at=pick(raw, "created_at", "createdAt"),
        updated_at=pick(raw, "updated_at", "updatedAt"),
    )


def normalize_actions(raws: Iterable[Any]) -> List[AgentAction]:
    """Normalize a batch, dropping entries that cannot be typed."""
    actions: List[AgentAction] = []
    for raw in raws or []:
        if isinstance(raw, AgentAction):
            actions.append(raw)
            continue
        if not isinstance(raw, Mapping):
            logger.warning("Skipping non-mapping action payload: %r", type(raw).__name__)
            continue
        try:
            actions.append(to_agent_action(raw))
        except UnknownActionTypeError as exc:
            logger.warning("Skipping action %s: %s", raw.get("id"), exc)
    return actions


def to_pending_approval(event: Mapping[str, Any]) -> PendingApproval:
    """Build a ``PendingApproval`` from a ``deferred_approval_request`` event."""
    action_data = pick(event, "action_data", "actionData", default={})
    return PendingApproval(
        action_id=_str(pick(event, "action_id", "actionId")),
        toolcall_id=_str(pick(event, "toolcall_id", "toolcallId")),
        action_type=_str(pick(event, "action_type", "actionType")),
        action_data=dict(action_data) if isinstance(action_data, Mapping) else {},
        current_value=pick(event, "current_value", "currentValue"),
    )
