"""Structural matching of streamed note markers.

While a response streams, a note marker such as
``<note title="Summary" item="1-ABCD">`` can be visible before the backend
has assigned the action an id. Markers are compared by tag name and by
their attribute set, ignoring attribute order.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, Optional, Tuple

from shelfmark.core.models import ActionType, AgentAction

_TAG_RE = re.compile(r"<(\w+)([^>]*)>")
_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')


def parse_tag(tag: str) -> Optional[Tuple[str, Dict[str, str]]]:
    match = _TAG_RE.search(tag or "")
    if not match:
        return None
    attrs = {name: value for name, value in _ATTR_RE.findall(match.group(2))}
    return match.group(1), attrs


def tags_match(first: str, second: str) -> bool:
    parsed_first = parse_tag(first)
    parsed_second = parse_tag(second)
    if parsed_first is None or parsed_second is None:
        return False
    return parsed_first == parsed_second


def find_by_raw_tag(actions: Iterable[AgentAction], run_id: str, raw_tag: str) -> Optional[AgentAction]:
    """First zotero_note action in ``run_id`` whose recorded marker matches."""
    for action in actions:
        if action.run_id != run_id or action.action_type != ActionType.ZOTERO_NOTE:
            continue
        if tags_match(action.proposed_data.get("raw_tag") or "", raw_tag):
            return action
    return None
