"""Backend-of-record adapters for local and hosted action persistence."""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from shelfmark.configs.base import BackendConfig, UpdateBatchConfig
from shelfmark.core.models import AckError, AckLink, AckResponse, ActionStatus
from shelfmark.exceptions import BackendError

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/agent-actions"


def classify_backend_error(exc: BaseException) -> BackendError:
    if isinstance(exc, BackendError):
        return exc
    message = str(exc).strip() or exc.__class__.__name__
    lowered = message.lower()

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return BackendError("backend_unavailable", message)
    status = getattr(getattr(exc, "response", None), "status_code", None)
    if status == 404 or "not_found" in lowered or " 404" in lowered or "not found" in lowered:
        return BackendError("not_found", message)
    if status in (401, 403) or " 401" in lowered or " 403" in lowered or "unauthorized" in lowered or "forbidden" in lowered:
        return BackendError("unauthorized", message)
    if "connection" in lowered or "timed out" in lowered or "max retries exceeded" in lowered:
        return BackendError("backend_unavailable", message)
    return BackendError("backend_error", message)


def _ack_response(run_id: str, payload: Dict[str, Any]) -> AckResponse:
    errors = [
        AckError(
            action_id=str(e.get("action_id", "")),
            code=str(e.get("code", "backend_error")),
            detail=str(e.get("detail", "")),
        )
        for e in payload.get("errors") or []
    ]
    return AckResponse(
        success=bool(payload.get("success", not errors)),
        run_id=str(payload.get("run_id") or run_id),
        updated=int(payload.get("updated") or 0),
        errors=errors,
    )


# ============================================================================
# Update coalescing
# ============================================================================

@dataclass
class _PendingUpdate:
    updates: Dict[str, Any]
    futures: List[asyncio.Future] = field(default_factory=list)


BatchDispatch = Callable[[List[Tuple[str, Dict[str, Any]]]], Awaitable[Dict[str, Any]]]


class UpdateBatcher:
    """Coalesces per-action updates into batched dispatches.

    Updates for the same action id queued before a flush are merged (later
    keys win). A flush happens ``flush_interval_ms`` after the first queued
    update, or at once when ``max_pending`` distinct ids are waiting. Each
    caller's future resolves or fails with its own id's outcome.
    """

    def __init__(self, dispatch: BatchDispatch, config: Optional[UpdateBatchConfig] = None):
        self._dispatch = dispatch
        self._config = config or UpdateBatchConfig()
        self._pending: Dict[str, _PendingUpdate] = OrderedDict()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, action_id: str, updates: Dict[str, Any]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry = self._pending.get(action_id)
        if entry is not None:
            entry.updates.update(updates)
            entry.futures.append(future)
        else:
            self._pending[action_id] = _PendingUpdate(dict(updates), [future])

        if len(self._pending) >= self._config.max_pending:
            self._flush_now()
        elif self._timer is None:
            self._timer = loop.call_later(self._config.flush_interval_ms / 1000, self._flush_now)
        return future

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _flush_now(self) -> None:
        self._cancel_timer()
        # A running drain picks up entries queued while it awaits.
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.ensure_future(self._drain())

    async def flush(self) -> None:
        """Dispatch everything queued and wait for it to resolve."""
        self._cancel_timer()
        while self._flush_task is not None and not self._flush_task.done():
            await asyncio.shield(self._flush_task)
        if self._pending:
            self._flush_task = asyncio.ensure_future(self._drain())
            await self._flush_task

    async def _drain(self) -> None:
        while self._pending:
            entries = list(self._pending.items())
            self._pending = OrderedDict()
            await self._dispatch_and_resolve(entries)

    async def _dispatch_and_resolve(self, entries: List[Tuple[str, _PendingUpdate]]) -> None:
        try:
            response = await self._dispatch([(action_id, entry.updates) for action_id, entry in entries])
        except Exception as exc:
            error = classify_backend_error(exc)
            logger.warning("Batched update of %d action(s) failed: %s", len(entries), error.message)
            for _, entry in entries:
                for future in entry.futures:
                    if not future.done():
                        future.set_exception(error)
            return

        errors = {str(e.get("action_id")): e for e in (response or {}).get("errors") or []}
        for action_id, entry in entries:
            error = errors.get(action_id)
            for future in entry.futures:
                if future.done():
                    continue
                if error is not None:
                    future.set_exception(
                        BackendError(str(error.get("code", "backend_error")), str(error.get("detail", "")))
                    )
                else:
                    future.set_result({"success": True, "action_id": action_id, **entry.updates})

    def close(self) -> None:
        """Drop queued updates; their callers see a cancellation."""
        self._cancel_timer()
        for entry in self._pending.values():
            for future in entry.futures:
                future.cancel()
        self._pending.clear()


# ============================================================================
# Backends
# ============================================================================

class BaseActionBackend(ABC):
    @abstractmethod
    async def acknowledge_actions(self, run_id: str, links: List[AckLink]) -> AckResponse:
        pass

    @abstractmethod
    async def update_action(self, action_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def send_approval_response(self, action_id: str, approved: bool) -> None:
        pass

    @abstractmethod
    async def get_actions_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        pass

    async def close(self) -> None:
        pass


class LocalActionBackend(BaseActionBackend):
    """In-process backend of record holding raw action payloads by id."""

    def __init__(self, actions: Optional[Iterable[Dict[str, Any]]] = None):
        self._actions: Dict[str, Dict[str, Any]] = OrderedDict()
        self.approval_responses: List[Dict[str, Any]] = []
        for raw in actions or []:
            self.put(raw)

    def put(self, raw: Dict[str, Any]) -> None:
        self._actions[str(raw["id"])] = copy.deepcopy(dict(raw))

    def get(self, action_id: str) -> Optional[Dict[str, Any]]:
        raw = self._actions.get(action_id)
        return copy.deepcopy(raw) if raw is not None else None

    async def acknowledge_actions(self, run_id: str, links: List[AckLink]) -> AckResponse:
        errors: List[AckError] = []
        updated = 0
        for link in links:
            raw = self._actions.get(link.action_id)
            if raw is None:
                errors.append(AckError(link.action_id, "not_found", f"Action {link.action_id} not found"))
                continue
            raw["status"] = ActionStatus.APPLIED.value
            raw["result_data"] = copy.deepcopy(link.result_data)
            raw.pop("error_message", None)
            updated += 1
        return AckResponse(success=not errors, run_id=run_id, updated=updated, errors=errors)

    async def update_action(self, action_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        raw = self._actions.get(action_id)
        if raw is None:
            raise BackendError("not_found", f"Action {action_id} not found")
        for key, value in updates.items():
            if key == "clear_result_data" and value:
                raw["result_data"] = None
            elif key == "clear_error_message" and value:
                raw["error_message"] = None
            elif key == "clear_error_details" and value:
                raw["error_details"] = None
            elif not key.startswith("clear_"):
                raw[key] = copy.deepcopy(value)
        return {"success": True, "action_id": action_id, **updates}

    async def send_approval_response(self, action_id: str, approved: bool) -> None:
        self.approval_responses.append({"action_id": action_id, "approved": bool(approved)})

    async def get_actions_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(raw)
            for raw in self._actions.values()
            if (raw.get("run_id") or raw.get("runId")) == run_id
        ]


class HostedActionBackend(BaseActionBackend):
    """Backend of record reached over the hosted REST API.

    ``requests`` is blocking, so every call runs in a worker thread.
    """

    def __init__(self, config: BackendConfig, update_config: Optional[UpdateBatchConfig] = None):
        if not config.api_url:
            raise BackendError("backend_unavailable", "SHELFMARK_API_URL is not configured")
        self.host = config.api_url
        self.api_key = config.api_key
        self.timeout = config.timeout_seconds
        self._batcher = UpdateBatcher(self._dispatch_updates, update_config)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, path: str, *, json_body: Dict[str, Any] = None):
        url = f"{self.host}{API_PREFIX}{path}"
        response = requests.request(method, url, headers=self._headers(), json=json_body, timeout=self.timeout)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def _call(self, method: str, path: str, *, json_body: Dict[str, Any] = None):
        try:
            return await asyncio.to_thread(self._request, method, path, json_body=json_body)
        except Exception as exc:
            raise classify_backend_error(exc) from exc

    async def acknowledge_actions(self, run_id: str, links: List[AckLink]) -> AckResponse:
        logger.info("Acknowledging %d action(s) for run %s", len(links), run_id)
        payload = await self._call(
            "POST", "/ack", json_body={"run_id": run_id, "links": [link.to_dict() for link in links]}
        )
        return _ack_response(run_id, payload or {})

    async def update_action(self, action_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("Queueing update for %s: %s", action_id, ", ".join(updates))
        return await self._batcher.enqueue(action_id, updates)

    async def _dispatch_updates(self, entries: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Any]:
        body = {"updates": [{"action_id": action_id, **updates} for action_id, updates in entries]}
        return await self._call("PATCH", "/batch", json_body=body)

    async def send_approval_response(self, action_id: str, approved: bool) -> None:
        await self._call("POST", f"/{action_id}/approval", json_body={"approved": bool(approved)})

    async def get_actions_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        payload = await self._call("GET", f"/run/{run_id}")
        if isinstance(payload, dict):
            payload = payload.get("actions") or []
        return list(payload or [])

    async def close(self) -> None:
        await self._batcher.flush()
        self._batcher.close()


def create_backend(
    config: Optional[BackendConfig] = None,
    update_config: Optional[UpdateBatchConfig] = None,
) -> BaseActionBackend:
    """Hosted backend when an API URL is configured, in-process otherwise."""
    if config is None:
        from shelfmark.configs.base import ShelfmarkConfig

        full = ShelfmarkConfig.from_env()
        config, update_config = full.backend, update_config or full.updates
    if config.api_url:
        return HostedActionBackend(config, update_config)
    return LocalActionBackend()
