"""Tests for pending approval tracking and reconstruction."""

import asyncio

from shelfmark.actions.approvals import ApprovalTracker, build_pending_approval
from shelfmark.core.models import PendingApproval


class TestApprovalTracker:
    def test_add_from_event_and_object(self):
        tracker = ApprovalTracker()
        tracker.add({"action_id": "a1", "toolcall_id": "t1", "action_type": "create_item"})
        tracker.add(PendingApproval(action_id="a2", toolcall_id="t2", action_type="zotero_note"))
        assert len(tracker) == 2
        assert [a.action_id for a in tracker.values()] == ["a1", "a2"]
        assert tracker.find_by_toolcall("t2").action_id == "a2"
        assert tracker.find_by_toolcall("nope") is None

    def test_re_adding_replaces(self):
        tracker = ApprovalTracker()
        tracker.add({"action_id": "a1", "toolcall_id": "t1", "action_type": "create_item"})
        tracker.add({"action_id": "a1", "toolcall_id": "t2", "action_type": "create_item"})
        assert len(tracker) == 1
        assert tracker.get("a1").toolcall_id == "t2"

    def test_remove_and_clear(self):
        tracker = ApprovalTracker()
        tracker.add({"action_id": "a1", "toolcall_id": "t1", "action_type": "create_item"})
        assert tracker.remove("a1")
        assert not tracker.remove("a1")
        tracker.add({"action_id": "a2", "toolcall_id": "t2", "action_type": "create_item"})
        tracker.clear()
        assert not tracker.has_any()


class TestBuildPendingApproval:
    def test_requires_toolcall(self, store, make_action):
        action = make_action("a1", "create_item")
        assert asyncio.run(build_pending_approval(action, store)) is None

    def test_edit_metadata_reads_live_values(self, store, make_action):
        store.add_item("ITEM1", fields={"title": "Live title", "date": ""})
        action = make_action("e1", "edit_metadata", {
            "library_id": 1, "zotero_key": "ITEM1",
            "edits": [
                {"field": "title", "old_value": "Live title", "new_value": "New"},
                {"field": "date", "old_value": None, "new_value": "2024"},
            ],
        }, toolcall_id="t1")
        approval = asyncio.run(build_pending_approval(action, store))
        assert approval.toolcall_id == "t1"
        assert approval.action_type == "edit_metadata"
        assert approval.current_value == {"title": "Live title", "date": None}

    def test_create_collection_context(self, store, make_action):
        action = make_action("k1", "create_collection", {
            "library_id": 2, "name": "Shared", "parent_key": "P1", "item_ids": ["2-A", "2-B"],
        }, toolcall_id="t1")
        approval = asyncio.run(build_pending_approval(action, store))
        assert approval.current_value == {"library_name": "Group Library", "parent_key": "P1", "item_count": 2}

    def test_unknown_library_name(self, store, make_action):
        action = make_action("k1", "create_collection", {"library_id": 9, "name": "x"}, toolcall_id="t1")
        approval = asyncio.run(build_pending_approval(action, store))
        assert approval.current_value["library_name"] == "Unknown Library"

    def test_organize_items_uses_saved_state(self, store, make_action):
        action = make_action("o1", "organize_items", {
            "item_ids": ["1-A"], "current_state": {"1-A": {"tags": ["x"], "collections": []}},
        }, toolcall_id="t1")
        approval = asyncio.run(build_pending_approval(action, store))
        assert approval.current_value == {"1-A": {"tags": ["x"], "collections": []}}

    def test_other_types_have_no_current_value(self, store, make_action):
        action = make_action("n1", "zotero_note", {"title": "x"}, toolcall_id="t1")
        approval = asyncio.run(build_pending_approval(action, store))
        assert approval.current_value is None
        assert approval.action_data["title"] == "x"
