"""Tests for backend adapters, update coalescing and error classification."""

import asyncio
import json

import pytest
import requests

from shelfmark.backend import (
    HostedActionBackend,
    LocalActionBackend,
    UpdateBatcher,
    classify_backend_error,
    create_backend,
)
from shelfmark.configs.base import BackendConfig, UpdateBatchConfig
from shelfmark.core.models import AckLink
from shelfmark.exceptions import BackendError


# ── classification ──────────────────────────────────────────────────────

class _HTTPErrorWithStatus(requests.HTTPError):
    def __init__(self, status):
        response = requests.Response()
        response.status_code = status
        super().__init__(f"HTTP {status}", response=response)


@pytest.mark.parametrize("exc,code", [
    (requests.ConnectionError("refused"), "backend_unavailable"),
    (requests.Timeout("slow"), "backend_unavailable"),
    (ConnectionError("Connection refused"), "backend_unavailable"),
    (_HTTPErrorWithStatus(404), "not_found"),
    (_HTTPErrorWithStatus(401), "unauthorized"),
    (_HTTPErrorWithStatus(403), "unauthorized"),
    (_HTTPErrorWithStatus(500), "backend_error"),
    (RuntimeError("Action a1 not found"), "not_found"),
    (RuntimeError("something odd"), "backend_error"),
])
def test_classify_backend_error(exc, code):
    assert classify_backend_error(exc).code == code


def test_classify_passes_backend_errors_through():
    error = BackendError("unauthorized", "bad key")
    assert classify_backend_error(error) is error


def test_classify_empty_message_uses_class_name():
    assert classify_backend_error(RuntimeError()).message == "RuntimeError"


# ── UpdateBatcher ───────────────────────────────────────────────────────

class RecordingDispatch:
    def __init__(self, response=None, error=None):
        self.batches = []
        self.response = response or {"success": True}
        self.error = error

    async def __call__(self, entries):
        self.batches.append(list(entries))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.response


class TestUpdateBatcher:
    def test_same_id_updates_are_merged(self):
        dispatch = RecordingDispatch()

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10_000))
            first = batcher.enqueue("a1", {"status": "error", "error_message": "x"})
            second = batcher.enqueue("a1", {"status": "pending", "clear_error_message": True})
            other = batcher.enqueue("a2", {"status": "rejected"})
            assert batcher.pending_count == 2
            await batcher.flush()
            return await first, await second, await other

        first, second, other = asyncio.run(scenario())
        assert dispatch.batches == [[
            ("a1", {"status": "pending", "error_message": "x", "clear_error_message": True}),
            ("a2", {"status": "rejected"}),
        ]]
        assert first == second
        assert first["status"] == "pending"
        assert other["action_id"] == "a2"

    def test_timer_flushes(self):
        dispatch = RecordingDispatch()

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10))
            return await asyncio.wait_for(batcher.enqueue("a1", {"status": "applied"}), timeout=2)

        assert asyncio.run(scenario())["success"]
        assert len(dispatch.batches) == 1

    def test_max_pending_flushes_immediately(self):
        dispatch = RecordingDispatch()

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10_000, max_pending=3))
            futures = [batcher.enqueue(f"a{i}", {"status": "rejected"}) for i in range(3)]
            await asyncio.wait_for(asyncio.gather(*futures), timeout=2)
            return batcher

        batcher = asyncio.run(scenario())
        assert [len(batch) for batch in dispatch.batches] == [3]
        assert batcher.pending_count == 0

    def test_per_id_errors(self):
        dispatch = RecordingDispatch(response={
            "success": False,
            "errors": [{"action_id": "a2", "code": "not_found", "detail": "no such action"}],
        })

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10_000))
            ok = batcher.enqueue("a1", {"status": "rejected"})
            missing = batcher.enqueue("a2", {"status": "rejected"})
            await batcher.flush()
            return await asyncio.gather(ok, missing, return_exceptions=True)

        ok, missing = asyncio.run(scenario())
        assert ok["success"]
        assert isinstance(missing, BackendError)
        assert missing.code == "not_found"
        assert missing.message == "no such action"

    def test_dispatch_failure_fails_every_caller(self):
        dispatch = RecordingDispatch(error=requests.ConnectionError("refused"))

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10_000))
            futures = [batcher.enqueue("a1", {}), batcher.enqueue("a2", {})]
            await batcher.flush()
            return await asyncio.gather(*futures, return_exceptions=True)

        results = asyncio.run(scenario())
        assert [r.code for r in results] == ["backend_unavailable", "backend_unavailable"]

    def test_close_cancels_queued(self):
        dispatch = RecordingDispatch()

        async def scenario():
            batcher = UpdateBatcher(dispatch, UpdateBatchConfig(flush_interval_ms=10_000))
            future = batcher.enqueue("a1", {"status": "rejected"})
            batcher.close()
            return future

        assert asyncio.run(scenario()).cancelled()
        assert dispatch.batches == []


# ── LocalActionBackend ──────────────────────────────────────────────────

class TestLocalBackend:
    def test_ack_reports_unknown_ids(self):
        backend = LocalActionBackend([{"id": "a1", "run_id": "r1", "status": "pending"}])
        response = asyncio.run(backend.acknowledge_actions("r1", [
            AckLink("a1", {"zotero_key": "K"}), AckLink("zz", {"zotero_key": "K"}),
        ]))
        assert not response.success
        assert response.updated == 1
        assert [(e.action_id, e.code) for e in response.errors] == [("zz", "not_found")]
        assert backend.get("a1")["status"] == "applied"

    def test_update_applies_clear_flags(self):
        backend = LocalActionBackend([{"id": "a1", "status": "error", "error_message": "x", "result_data": {"k": 1}}])
        asyncio.run(backend.update_action("a1", {
            "status": "pending", "clear_result_data": True, "clear_error_message": True,
        }))
        raw = backend.get("a1")
        assert raw["status"] == "pending"
        assert raw["result_data"] is None
        assert raw["error_message"] is None
        assert "clear_result_data" not in raw

    def test_update_unknown_raises_not_found(self):
        with pytest.raises(BackendError) as exc_info:
            asyncio.run(LocalActionBackend().update_action("nope", {"status": "rejected"}))
        assert exc_info.value.code == "not_found"

    def test_get_is_a_copy(self):
        backend = LocalActionBackend([{"id": "a1", "proposed_data": {"x": 1}}])
        backend.get("a1")["proposed_data"]["x"] = 2
        assert backend.get("a1")["proposed_data"]["x"] == 1


# ── HostedActionBackend ─────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode() if payload is not None else b""

    def raise_for_status(self):
        if self.status_code >= 400:
            response = requests.Response()
            response.status_code = self.status_code
            raise requests.HTTPError(f"{self.status_code} Client Error", response=response)

    def json(self):
        return self._payload


@pytest.fixture
def http(monkeypatch):
    calls = []
    responses = []

    def fake_request(method, url, headers=None, json=None, timeout=None):
        calls.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        return responses.pop(0) if responses else FakeResponse({})

    monkeypatch.setattr("shelfmark.backend.requests.request", fake_request)
    return calls, responses


@pytest.fixture
def hosted():
    return HostedActionBackend(
        BackendConfig(api_url="https://api.example.test/", api_key="secret", timeout_seconds=5),
        UpdateBatchConfig(flush_interval_ms=10_000),
    )


class TestHostedBackend:
    def test_requires_api_url(self):
        with pytest.raises(BackendError) as exc_info:
            HostedActionBackend(BackendConfig())
        assert exc_info.value.code == "backend_unavailable"

    def test_acknowledge(self, http, hosted):
        calls, responses = http
        responses.append(FakeResponse({
            "success": False, "run_id": "r1", "updated": 1,
            "errors": [{"action_id": "a2", "code": "not_found", "detail": "missing"}],
        }))
        response = asyncio.run(hosted.acknowledge_actions("r1", [
            AckLink("a1", {"zotero_key": "K"}), AckLink("a2", None),
        ]))
        assert response.updated == 1
        assert response.errors[0].action_id == "a2"
        call = calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://api.example.test/api/v1/agent-actions/ack"
        assert call["headers"]["Authorization"] == "Bearer secret"
        assert call["timeout"] == 5
        assert call["json"]["run_id"] == "r1"
        assert [link["action_id"] for link in call["json"]["links"]] == ["a1", "a2"]

    def test_updates_are_batched(self, http, hosted):
        calls, _ = http

        async def scenario():
            first = asyncio.ensure_future(hosted.update_action("a1", {"status": "rejected"}))
            second = asyncio.ensure_future(hosted.update_action("a2", {"status": "undone"}))
            await asyncio.sleep(0)
            await hosted.close()
            return await first, await second

        asyncio.run(scenario())
        assert len(calls) == 1
        assert calls[0]["method"] == "PATCH"
        assert calls[0]["url"].endswith("/agent-actions/batch")
        assert calls[0]["json"] == {"updates": [
            {"action_id": "a1", "status": "rejected"},
            {"action_id": "a2", "status": "undone"},
        ]}

    def test_approval_response(self, http, hosted):
        calls, _ = http
        asyncio.run(hosted.send_approval_response("a1", True))
        assert calls[0]["url"].endswith("/agent-actions/a1/approval")
        assert calls[0]["json"] == {"approved": True}

    def test_get_actions_for_run(self, http, hosted):
        calls, responses = http
        responses.append(FakeResponse({"actions": [{"id": "a1"}]}))
        assert asyncio.run(hosted.get_actions_for_run("r1")) == [{"id": "a1"}]
        assert calls[0]["method"] == "GET"
        assert calls[0]["url"].endswith("/agent-actions/run/r1")

    def test_http_errors_are_classified(self, http, hosted):
        _, responses = http
        responses.append(FakeResponse({"detail": "nope"}, status_code=404))
        with pytest.raises(BackendError) as exc_info:
            asyncio.run(hosted.get_actions_for_run("r1"))
        assert exc_info.value.code == "not_found"


# ── create_backend ──────────────────────────────────────────────────────

def test_create_backend_from_env(monkeypatch):
    monkeypatch.setenv("SHELFMARK_API_URL", "https://api.example.test")
    monkeypatch.setenv("SHELFMARK_API_KEY", "k")
    backend = create_backend()
    assert isinstance(backend, HostedActionBackend)
    assert backend.host == "https://api.example.test"
    assert backend.api_key == "k"


def test_create_backend_defaults_to_local(monkeypatch):
    monkeypatch.delenv("SHELFMARK_API_URL", raising=False)
    assert isinstance(create_backend(), LocalActionBackend)
    assert isinstance(create_backend(BackendConfig(api_url="  ")), LocalActionBackend)
