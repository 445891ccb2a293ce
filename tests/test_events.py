"""Tests for routing streamed events into a session."""

from shelfmark.core.models import ActionStatus
from shelfmark.events import ActionEventRouter


def test_agent_actions_are_ingested_with_run_id(session):
    router = ActionEventRouter(session)
    actions = router.dispatch({
        "event": "agent_actions",
        "runId": "r1",
        "actions": [
            {"id": "a1", "actionType": "create_item", "proposedData": {"item": {"title": "P"}}},
            {"id": "a2", "action_type": "launch_rocket"},
            {"id": "a3", "action_type": "zotero_note", "run_id": "r0"},
        ],
    })
    assert [a.id for a in actions] == ["a1", "a3"]
    assert session.registry.get("a1").run_id == "r1"
    assert session.registry.get("a3").run_id == "r0"


def test_repeated_events_are_idempotent(session):
    router = ActionEventRouter(session)
    event = {"event": "agent_actions", "run_id": "r1", "actions": [{"id": "a1", "action_type": "create_item"}]}
    router.dispatch(event)
    router.dispatch(event)
    assert len(session.registry) == 1


def test_approval_request_tracked(session):
    router = ActionEventRouter(session)
    approval = router.dispatch({
        "type": "deferred_approval_request",
        "actionId": "a1", "toolcallId": "t1", "actionType": "edit_metadata",
        "actionData": {"zotero_key": "K"}, "currentValue": {"title": "Old"},
    })
    assert approval.action_id == "a1"
    assert session.approvals.find_by_toolcall("t1") is approval


def test_run_complete_upserts_and_clears_approvals(session):
    router = ActionEventRouter(session)
    router.dispatch({"event": "agent_actions", "run_id": "r1", "actions": [
        {"id": "a1", "action_type": "create_item"},
    ]})
    router.dispatch({"event": "deferred_approval_request", "action_id": "a1", "toolcall_id": "t1",
                     "action_type": "create_item"})
    router.dispatch({"event": "deferred_approval_request", "action_id": "b1", "toolcall_id": "t9",
                     "action_type": "create_item"})

    router.dispatch({"event": "run_complete", "run_id": "r1", "agent_actions": [
        {"id": "a1", "action_type": "create_item", "status": "applied",
         "result_data": {"zotero_key": "K", "library_id": 1}},
    ]})
    assert session.registry.get("a1").status == ActionStatus.APPLIED
    assert "a1" not in session.approvals
    assert "b1" in session.approvals


def test_unknown_events_are_ignored(session):
    router = ActionEventRouter(session)
    assert router.dispatch({"event": "token", "text": "hi"}) is None
    assert router.dispatch({}) is None
    assert len(session.registry) == 0
