"""ActionSession: the owner of one conversation's agent actions.

Every lifecycle operation changes local state synchronously and then hands
the backend-of-record call to a tracked asyncio task. Local state is never
rolled back when the backend call fails; failed acknowledgements wait in an
outbox until ``reconcile()`` re-sends them.

Without a running event loop the synchronous operations still change local
state, but skip the backend call with a warning; acknowledgements skipped
this way go to the outbox.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from shelfmark.actions.approvals import ApprovalTracker, build_pending_approval
from shelfmark.actions.handlers import HandlerFactory, validate_applied_action
from shelfmark.actions.parallel import BatchExecutor, BatchResult
from shelfmark.actions.registry import ActionRegistry
from shelfmark.actions.store import RecordStore
from shelfmark.backend import BaseActionBackend, LocalActionBackend, classify_backend_error
from shelfmark.configs.base import ShelfmarkConfig
from shelfmark.core.conflict import UndoOutcome, undo_edit_metadata
from shelfmark.core.lifecycle import APPLYABLE_STATUSES, RETRYABLE_STATUSES, can_transition, clears_outcome
from shelfmark.core.models import AckLink, ActionStatus, ActionType, AgentAction
from shelfmark.core.normalizer import normalize_actions, to_result_data
from shelfmark.exceptions import InvalidTransitionError
from shelfmark.observability import ActionMetrics, elapsed_ms
from shelfmark.observability import metrics as default_metrics

logger = logging.getLogger(__name__)

LinkLike = Union[AckLink, Mapping[str, Any]]


def _as_link(link: LinkLike) -> AckLink:
    if isinstance(link, AckLink):
        return link
    return AckLink(
        action_id=str(link.get("action_id") or link.get("actionId") or ""),
        result_data=link.get("result_data", link.get("resultData")),
    )


class ActionSession:
    def __init__(
        self,
        store: RecordStore,
        backend: Optional[BaseActionBackend] = None,
        *,
        config: Optional[ShelfmarkConfig] = None,
        registry: Optional[ActionRegistry] = None,
        approvals: Optional[ApprovalTracker] = None,
        metrics: Optional[ActionMetrics] = None,
    ):
        self.config = config or ShelfmarkConfig()
        self.store = store
        self.backend = backend or LocalActionBackend()
        self.registry = registry if registry is not None else ActionRegistry()
        self.approvals = approvals if approvals is not None else ApprovalTracker()
        self.metrics = metrics or default_metrics
        self._executor = BatchExecutor(self.config.batch.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._outbox: Dict[str, Dict[str, AckLink]] = OrderedDict()
        # action id -> applied snapshot, kept while an overwrite awaits confirmation
        self._pending_overwrites: Dict[str, AgentAction] = {}

    # ── background work ──

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; skipping background call %s", coro.__qualname__)
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every fire-and-forget backend call issued so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _persist(self, action_id: str, updates: Dict[str, Any]) -> None:
        try:
            await self.backend.update_action(action_id, updates)
        except Exception as exc:
            error = classify_backend_error(exc)
            self.metrics.record_backend_error(error.code)
            logger.warning("Failed to persist %s for %s: [%s] %s", updates.get("status"), action_id, error.code, error.message)

    # ── state machine ──

    def _transition(self, action_id: str, target: ActionStatus, patch: Optional[Dict[str, Any]] = None) -> bool:
        action = self.registry.get(action_id)
        if action is None:
            logger.warning("Unknown action %s; cannot move to %s", action_id, target.value)
            return False
        if not can_transition(action.status, target):
            if self.config.lifecycle.strict_transitions:
                raise InvalidTransitionError(action_id, action.status.value, target.value)
            logger.warning("Skipping %s: cannot move from %s to %s", action_id, action.status.value, target.value)
            return False
        updates: Dict[str, Any] = {"status": target}
        if clears_outcome(target):
            updates.update(result_data=None, error_message=None, error_details=None)
        updates.update(patch or {})
        self.registry.update_fields({action_id: updates})
        return True

    # ── registry passthroughs ──

    def ingest(self, raws: Iterable[Any]) -> List[AgentAction]:
        """Normalize raw backend payloads and upsert them."""
        return self.registry.upsert(normalize_actions(raws))

    def add(self, actions: Iterable[AgentAction]) -> None:
        self.registry.add(actions)

    def upsert(self, actions: Iterable[AgentAction]) -> List[AgentAction]:
        # Snapshots from the backend of record are authoritative; no transition checks.
        return self.registry.upsert(actions)

    def delete(self, action_ids: Iterable[str]) -> int:
        action_ids = list(action_ids)
        for action_id in action_ids:
            self._pending_overwrites.pop(action_id, None)
        return self.registry.remove(action_ids)

    def update(self, updates: Dict[str, Dict[str, Any]]) -> List[str]:
        return self.registry.update_fields(updates)

    def clear(self) -> None:
        """Forget everything local, e.g. when switching conversation."""
        self.registry.clear()
        self.approvals.clear()
        self._outbox.clear()
        self._pending_overwrites.clear()

    # ── lifecycle operations ──

    def acknowledge_applied(self, run_id: str, links: Iterable[LinkLike]) -> List[str]:
        """Mark actions applied with their results, then tell the backend."""
        sent: List[AckLink] = []
        for link in map(_as_link, links):
            action = self.registry.get(link.action_id)
            if action is None:
                logger.warning("Cannot acknowledge unknown action %s", link.action_id)
                continue
            result = to_result_data(action.action_type, link.result_data)
            if result is None:
                logger.debug("Acknowledgement for %s carries no identifiable result", link.action_id)
            patch = {"error_message": None, "error_details": None}
            if result is not None:
                patch["result_data"] = result
            if self._transition(link.action_id, ActionStatus.APPLIED, patch):
                sent.append(AckLink(link.action_id, result if result is not None else link.result_data))
        if sent and self._spawn(self._send_ack(run_id, sent)) is None:
            self._queue_for_reconcile(run_id, sent)
        return [link.action_id for link in sent]

    async def _send_ack(self, run_id: str, links: List[AckLink]) -> None:
        try:
            response = await self.backend.acknowledge_actions(run_id, links)
        except Exception as exc:
            error = classify_backend_error(exc)
            self.metrics.record_ack(len(links), error=True)
            self.metrics.record_backend_error(error.code)
            logger.warning("Acknowledgement of %d action(s) for run %s failed: [%s] %s",
                           len(links), run_id, error.code, error.message)
            self._queue_for_reconcile(run_id, links)
            return

        failed = {e.action_id for e in response.errors}
        for error in response.errors:
            logger.warning("Backend rejected acknowledgement of %s: [%s] %s", error.action_id, error.code, error.detail)
        self.metrics.record_ack(len(links) - len(failed))
        if failed:
            self.metrics.record_ack(len(failed), error=True)
            self._queue_for_reconcile(run_id, [link for link in links if link.action_id in failed])

    def _queue_for_reconcile(self, run_id: str, links: List[AckLink]) -> None:
        if not self.config.lifecycle.reconcile_on_ack_failure:
            return
        queued = self._outbox.setdefault(run_id, OrderedDict())
        for link in links:
            queued[link.action_id] = link

    def mark_error(self, action_ids: Iterable[str], message: str) -> List[str]:
        changed = []
        for action_id in action_ids:
            if self._transition(action_id, ActionStatus.ERROR, {"error_message": message}):
                changed.append(action_id)
                self._spawn(self._persist(action_id, {"status": ActionStatus.ERROR.value, "error_message": message}))
        return changed

    def _clear_and_persist(self, action_id: str, target: ActionStatus) -> bool:
        if not self._transition(action_id, target):
            return False
        self._spawn(self._persist(action_id, {
            "status": target.value,
            "clear_result_data": True,
            "clear_error_message": True,
        }))
        return True

    def reject(self, action_id: str) -> bool:
        self._pending_overwrites.pop(action_id, None)
        rejected = self._clear_and_persist(action_id, ActionStatus.REJECTED)
        if rejected:
            self.metrics.record_reject()
        return rejected

    def undo(self, action_id: str) -> bool:
        """Mark an applied action undone. Host-side reversal is ``undo_action``."""
        return self._clear_and_persist(action_id, ActionStatus.UNDONE)

    def retry(self, action_id: str) -> bool:
        """Put a rejected or undone action back up for approval."""
        action = self.registry.get(action_id)
        if action is None or action.status not in RETRYABLE_STATUSES:
            logger.warning("Cannot retry %s from status %s", action_id, getattr(action, "status", None))
            return False
        self._pending_overwrites.pop(action_id, None)
        return self._clear_and_persist(action_id, ActionStatus.PENDING)

    def respond_to_approval(self, action_id: str, approved: bool) -> bool:
        """Drop the pending approval now and send the decision in the background."""
        removed = self.approvals.remove(action_id)
        self._spawn(self._send_approval(action_id, approved))
        return removed

    async def _send_approval(self, action_id: str, approved: bool) -> None:
        try:
            await self.backend.send_approval_response(action_id, approved)
        except Exception as exc:
            error = classify_backend_error(exc)
            self.metrics.record_backend_error(error.code)
            logger.warning("Approval response for %s not delivered: [%s] %s", action_id, error.code, error.message)

    # ── batch apply / undo ──

    def _resolve(self, actions: Iterable[Union[str, AgentAction]]) -> List[AgentAction]:
        resolved = []
        for entry in actions:
            action_id = entry.id if isinstance(entry, AgentAction) else str(entry)
            action = self.registry.get(action_id)
            if action is None:
                logger.warning("Skipping unknown action %s", action_id)
                continue
            resolved.append(action)
        return resolved

    @staticmethod
    def _by_type(actions: List[AgentAction]) -> Dict[ActionType, List[AgentAction]]:
        groups: Dict[ActionType, List[AgentAction]] = OrderedDict()
        for action in actions:
            groups.setdefault(action.action_type, []).append(action)
        return groups

    async def apply_batch(self, actions: Iterable[Union[str, AgentAction]]) -> BatchResult:
        """Apply pending or errored actions on the host side.

        Successes are acknowledged with one backend call per run once every
        local change is made; each failure moves its action to ``error``.
        """
        candidates = []
        for action in self._resolve(actions):
            if action.status in APPLYABLE_STATUSES:
                candidates.append(action)
            else:
                logger.info("Skipping apply of %s in status %s", action.id, action.status.value)

        combined = BatchResult()
        for action_type, group in self._by_type(candidates).items():
            handler = HandlerFactory.create(action_type, self.store)
            start = time.perf_counter()
            result = await self._executor.run(group, handler.apply)
            self.metrics.record_apply(action_type.value, elapsed_ms(start),
                                      succeeded=len(result.successes), failed=len(result.failures))
            combined.successes.extend(result.successes)
            combined.failures.extend(result.failures)

        by_run: Dict[str, List[AckLink]] = OrderedDict()
        for success in combined.successes:
            by_run.setdefault(success.action.run_id, []).append(AckLink(success.action.id, success.result))
        for run_id, links in by_run.items():
            self.acknowledge_applied(run_id, links)
        for failure in combined.failures:
            self.mark_error([failure.action.id], str(failure.error) or failure.error.__class__.__name__)
        return combined

    async def undo_batch(self, actions: Iterable[Union[str, AgentAction]]) -> BatchResult:
        """Reverse applied actions on the host side and mark them undone."""
        candidates = []
        for action in self._resolve(actions):
            if action.status == ActionStatus.APPLIED:
                candidates.append(action)
            else:
                logger.warning("Refusing to undo %s in status %s", action.id, action.status.value)

        combined = BatchResult()
        for action_type, group in self._by_type(candidates).items():
            handler = HandlerFactory.create(action_type, self.store)
            start = time.perf_counter()
            result = await self._executor.run(group, handler.undo)
            self.metrics.record_undo(action_type.value, elapsed_ms(start),
                                     succeeded=len(result.successes), failed=len(result.failures))
            combined.successes.extend(result.successes)
            combined.failures.extend(result.failures)

        for success in combined.successes:
            snapshot = success.action.copy()
            if self.undo(success.action.id):
                self._track_overwrite(snapshot, success.result)
        for failure in combined.failures:
            self.mark_error([failure.action.id], str(failure.error) or failure.error.__class__.__name__)
        return combined

    async def apply_action(self, action_id: str) -> BatchResult:
        return await self.apply_batch([action_id])

    async def undo_action(self, action_id: str) -> BatchResult:
        return await self.undo_batch([action_id])

    def _track_overwrite(self, applied: AgentAction, outcome: Any) -> None:
        if isinstance(outcome, UndoOutcome) and outcome.needs_confirmation:
            self._pending_overwrites[applied.id] = applied
            self.metrics.record_needs_confirmation()
        else:
            self._pending_overwrites.pop(applied.id, None)

    def awaiting_overwrite(self, action_id: str) -> bool:
        return action_id in self._pending_overwrites

    async def undo_edit_metadata(self, action_id: str, force: bool = False) -> Optional[UndoOutcome]:
        """Conflict-aware undo of one edit_metadata action.

        The first pass moves the action to ``undone`` even when some fields
        were left alone because they changed after the edit was applied.
        Calling again with ``force=True`` overwrites those fields too.
        """
        action = self.registry.get(action_id)
        if action is None:
            logger.warning("Unknown action %s", action_id)
            return None
        if action.action_type != ActionType.EDIT_METADATA:
            raise ValueError(f"Action {action_id} is {action.action_type.value}, not edit_metadata")

        if action.status == ActionStatus.APPLIED:
            target = action
        elif force and action_id in self._pending_overwrites:
            target = self._pending_overwrites[action_id]
        else:
            logger.warning("Refusing to undo %s in status %s", action_id, action.status.value)
            return None

        start = time.perf_counter()
        try:
            outcome = await undo_edit_metadata(self.store, target, force=force)
        except Exception as exc:
            self.metrics.record_undo(ActionType.EDIT_METADATA.value, elapsed_ms(start), failed=1)
            logger.warning("Undo of %s failed: %s", action_id, exc)
            if action.status == ActionStatus.APPLIED:
                self.mark_error([action_id], str(exc))
            return None
        self.metrics.record_undo(ActionType.EDIT_METADATA.value, elapsed_ms(start), succeeded=1)

        if action.status == ActionStatus.APPLIED:
            self.undo(action_id)
        self._track_overwrite(target, outcome)
        return outcome

    # ── reconciliation ──

    def unacknowledged(self) -> Dict[str, List[AckLink]]:
        return {run_id: list(links.values()) for run_id, links in self._outbox.items()}

    async def reconcile(self) -> int:
        """Re-send queued acknowledgements. Returns how many were accepted."""
        accepted = 0
        for run_id, links in list(self._outbox.items()):
            try:
                with self.metrics.measure("reconcile"):
                    response = await self.backend.acknowledge_actions(run_id, list(links.values()))
            except Exception as exc:
                error = classify_backend_error(exc)
                self.metrics.record_backend_error(error.code)
                logger.warning("Reconcile for run %s failed: [%s] %s", run_id, error.code, error.message)
                continue

            errors = {e.action_id: e for e in response.errors}
            for action_id in list(links):
                error = errors.get(action_id)
                if error is None:
                    del links[action_id]
                    accepted += 1
                elif error.code == "not_found":
                    logger.warning("Dropping acknowledgement of %s: backend has no such action", action_id)
                    del links[action_id]
            if not links:
                del self._outbox[run_id]
        if accepted:
            self.metrics.record_ack(accepted)
        return accepted

    async def rehydrate(self, run_id: str, restore_approvals: bool = False) -> List[AgentAction]:
        """Pull the backend snapshot of a run into the registry."""
        try:
            raws = await self.backend.get_actions_for_run(run_id)
        except Exception as exc:
            raise classify_backend_error(exc) from exc
        actions = self.registry.upsert(normalize_actions(raws))
        if restore_approvals:
            for action in actions:
                if action.status != ActionStatus.PENDING or action.id in self.approvals:
                    continue
                approval = await build_pending_approval(action, self.store)
                if approval is not None:
                    self.approvals.add(approval)
        logger.info("Rehydrated %d action(s) for run %s", len(actions), run_id)
        return actions

    async def stale_applied(self, run_id: Optional[str] = None) -> List[str]:
        """Ids of applied actions whose host records have disappeared."""
        candidates = self.registry.by_run(run_id) if run_id else self.registry.snapshot()
        stale = []
        for action in candidates:
            if action.status == ActionStatus.APPLIED and not await validate_applied_action(action, self.store):
                stale.append(action.id)
        return stale
