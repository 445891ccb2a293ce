"""Shared fixtures: an in-memory host store and a recording backend."""

from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Dict, Iterable, List, Optional

import pytest

from shelfmark.actions.session import ActionSession
from shelfmark.actions.store import RecordStore
from shelfmark.backend import LocalActionBackend
from shelfmark.configs.base import ShelfmarkConfig
from shelfmark.core.normalizer import to_agent_action
from shelfmark.exceptions import BackendError
from shelfmark.observability import ActionMetrics


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self.items: Dict[tuple, Dict[str, Any]] = {}
        self.collections: Dict[tuple, Dict[str, Any]] = {}
        self.libraries = {1: "My Library", 2: "Group Library"}
        self.invalid_fields = set()
        self.fail_on = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self._keys = itertools.count(1)

    def _next_key(self) -> str:
        return f"K{next(self._keys):07d}"

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")

    def add_item(
        self,
        key: str,
        library_id: int = 1,
        item_type: str = "journalArticle",
        fields: Optional[Dict[str, Any]] = None,
        creators: Optional[List[Dict[str, Any]]] = None,
        tags: Iterable[str] = (),
        collections: Iterable[str] = (),
    ) -> Dict[str, Any]:
        item = {
            "key": key,
            "library_id": library_id,
            "item_type": item_type,
            "fields": dict(fields or {}),
            "creators": list(creators or []),
            "tags": list(tags),
            "collections": list(collections),
        }
        self.items[(library_id, key)] = item
        return item

    def add_collection(self, key: str, library_id: int = 1, name: str = "Existing") -> None:
        self.collections[(library_id, key)] = {"key": key, "name": name, "parent_key": None}

    async def get_item(self, library_id, key):
        self._check("get_item")
        item = self.items.get((library_id, key))
        return copy.deepcopy(item) if item else None

    async def update_item(self, library_id, key, *, fields=None, creators=None, add_tags=(),
                          remove_tags=(), add_collections=(), remove_collections=()):
        self._check("update_item")
        item = self.items.get((library_id, key))
        if item is None:
            raise KeyError(f"{library_id}-{key}")
        for name, value in (fields or {}).items():
            if name in self.invalid_fields:
                raise ValueError(f"Invalid field: {name}")
            item["fields"][name] = value
        if creators is not None:
            item["creators"] = copy.deepcopy(creators)
        item["tags"] = [t for t in item["tags"] if t not in set(remove_tags)]
        item["tags"].extend(t for t in add_tags if t not in item["tags"])
        item["collections"] = [c for c in item["collections"] if c not in set(remove_collections)]
        item["collections"].extend(c for c in add_collections if c not in item["collections"])

    async def erase_item(self, library_id, key):
        self._check("erase_item")
        return self.items.pop((library_id, key), None) is not None

    async def create_annotation(self, library_id, attachment_key, annotation):
        self._check("create_annotation")
        key = self._next_key()
        self.add_item(key, library_id, item_type="annotation", fields={"parent": attachment_key, **annotation})
        return key

    async def create_note(self, library_id, parent_key, title, content):
        self._check("create_note")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if title == "boom":
                raise RuntimeError("note rejected by host")
            key = self._next_key()
            self.add_item(key, library_id, item_type="note", fields={"title": title, "note": content})
            return key
        finally:
            self.in_flight -= 1

    async def create_item(self, proposed):
        self._check("create_item")
        key = self._next_key()
        self.add_item(key, 1, fields=dict(proposed.get("item") or {}))
        return {"itemKey": key, "libraryId": 1}

    async def create_collection(self, library_id, name, parent_key=None):
        self._check("create_collection")
        key = self._next_key()
        self.collections[(library_id, key)] = {"key": key, "name": name, "parent_key": parent_key}
        return key

    async def get_collection(self, library_id, key):
        return copy.deepcopy(self.collections.get((library_id, key)))

    async def add_items_to_collection(self, library_id, collection_key, item_keys):
        for key in item_keys:
            self.items[(library_id, key)]["collections"].append(collection_key)
        return len(item_keys)

    async def erase_collection(self, library_id, key):
        return self.collections.pop((library_id, key), None) is not None

    async def resolve_library(self, name):
        for library_id, library_name in self.libraries.items():
            if library_name.lower() == name.lower():
                return library_id
        return None

    async def get_library_name(self, library_id):
        return self.libraries.get(library_id)


class RecordingBackend(LocalActionBackend):
    """Local backend that records every call and can be told to fail."""

    def __init__(self, actions=None):
        super().__init__(actions)
        self.calls: List[tuple] = []
        self.fail_ack = False
        self.fail_updates = False

    async def acknowledge_actions(self, run_id, links):
        self.calls.append(("ack", run_id, [link.action_id for link in links]))
        if self.fail_ack:
            raise ConnectionError("Connection refused")
        return await super().acknowledge_actions(run_id, links)

    async def update_action(self, action_id, updates):
        self.calls.append(("update", action_id, dict(updates)))
        if self.fail_updates:
            raise BackendError("backend_error", "update rejected")
        return await super().update_action(action_id, updates)

    async def send_approval_response(self, action_id, approved):
        self.calls.append(("approval", action_id, approved))
        await super().send_approval_response(action_id, approved)

    def calls_of(self, kind: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == kind]


def raw_action(action_id: str, action_type: str, proposed: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    raw = {
        "id": action_id,
        "run_id": "run-1",
        "action_type": action_type,
        "status": "pending",
        "proposed_data": proposed or {},
    }
    raw.update(extra)
    return raw


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def make_action():
    def _make(action_id, action_type, proposed=None, **extra):
        return to_agent_action(raw_action(action_id, action_type, proposed, **extra))
    return _make


@pytest.fixture
def session(store, backend):
    return ActionSession(store, backend, config=ShelfmarkConfig(), metrics=ActionMetrics())


@pytest.fixture
def register(session, backend, make_action):
    """Register actions locally and in the backend of record."""
    def _register(action_id, action_type, proposed=None, **extra):
        action = make_action(action_id, action_type, proposed, **extra)
        backend.put(action.to_dict())
        session.add([action])
        return action
    return _register
