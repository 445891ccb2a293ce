import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from shelfmark.core.models import AgentAction
from shelfmark.exceptions import ActionApplyError

logger = logging.getLogger(__name__)

CREATORS_FIELD = "creators"


@dataclass
class UndoOutcome:
    fields_reverted: List[str] = field(default_factory=list)
    already_reverted: List[str] = field(default_factory=list)
    manually_modified: List[str] = field(default_factory=list)
    needs_confirmation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_field_value(value: Any) -> str:
    # Host stores report empty fields as "" while payloads use None.
    if value is None:
        return ""
    return str(value)


def _creator_signature(creators: Optional[List[Dict[str, Any]]]) -> Tuple:
    return tuple(
        tuple(sorted((k, normalize_field_value(v)) for k, v in creator.items()))
        for creator in creators or []
    )


def _first_not_none(*values):
    return next((v for v in values if v is not None), None)


def applied_field_values(action: AgentAction) -> Dict[str, Any]:
    """Field -> value the action wrote, preferring the recorded apply result."""
    result = action.result_data or {}
    applied = result.get("applied_edits")
    if applied:
        return {edit["field"]: edit.get("applied_value") for edit in applied if edit.get("field")}
    return {
        edit["field"]: edit.get("new_value")
        for edit in action.proposed_data.get("edits") or []
        if edit.get("field")
    }


async def undo_edit_metadata(store, action: AgentAction, force: bool = False) -> UndoOutcome:
    """Revert an applied edit_metadata action without clobbering manual edits.

    A field is reverted only while its live value still equals the value the
    action applied. Fields changed since then are reported in
    ``manually_modified`` and left alone unless ``force`` is set.
    """
    proposed = action.proposed_data
    library_id = proposed.get("library_id")
    zotero_key = proposed.get("zotero_key")
    item = await store.get_item(library_id, zotero_key)
    if not item:
        raise ActionApplyError(f"Item not found: {library_id}-{zotero_key}", action_id=action.id)

    outcome = UndoOutcome()
    current_fields = item.get("fields") or {}
    old_values = {edit["field"]: edit.get("old_value") for edit in proposed.get("edits") or []}
    reverts: Dict[str, Any] = {}

    for field_name, applied_value in applied_field_values(action).items():
        old_value = old_values.get(field_name)
        current = normalize_field_value(current_fields.get(field_name))
        if current == normalize_field_value(applied_value):
            reverts[field_name] = old_value if old_value is not None else ""
            outcome.fields_reverted.append(field_name)
        elif current == normalize_field_value(old_value):
            outcome.already_reverted.append(field_name)
        else:
            outcome.manually_modified.append(field_name)
            if force:
                reverts[field_name] = old_value if old_value is not None else ""
                outcome.fields_reverted.append(field_name)

    creators_revert = None
    result = action.result_data or {}
    applied_creators = _first_not_none(result.get("new_creators"), proposed.get("creators"))
    old_creators = _first_not_none(result.get("old_creators"), proposed.get("old_creators"))
    if applied_creators is not None and old_creators is not None:
        current = _creator_signature(item.get("creators"))
        if current == _creator_signature(applied_creators):
            creators_revert = old_creators
            outcome.fields_reverted.append(CREATORS_FIELD)
        elif current == _creator_signature(old_creators):
            outcome.already_reverted.append(CREATORS_FIELD)
        else:
            outcome.manually_modified.append(CREATORS_FIELD)
            if force:
                creators_revert = old_creators
                outcome.fields_reverted.append(CREATORS_FIELD)

    if reverts or creators_revert is not None:
        await store.update_item(
            library_id,
            zotero_key,
            fields=reverts or None,
            creators=creators_revert,
        )
        logger.info(
            "Reverted %d field(s) on %s-%s (force=%s)",
            len(outcome.fields_reverted), library_id, zotero_key, force,
        )

    outcome.needs_confirmation = bool(outcome.manually_modified) and not force
    if outcome.needs_confirmation:
        logger.info(
            "Undo of %s left manually modified fields untouched: %s",
            action.id, ", ".join(outcome.manually_modified),
        )
    return outcome
