"""Routing of streamed agent events into an ``ActionSession``."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from shelfmark.actions.session import ActionSession
from shelfmark.core.normalizer import pick

logger = logging.getLogger(__name__)


class ActionEventRouter:
    """Single ingestion boundary for raw streamed events.

    Events are plain dicts keyed by ``event`` (or ``type``)::

        {"event": "agent_actions", "run_id": "r1", "actions": [...]}
        {"event": "deferred_approval_request", "action_id": "a1", "toolcall_id": "t1", ...}
        {"event": "run_complete", "run_id": "r1", "agent_actions": [...]}
    """

    def __init__(self, session: ActionSession):
        self.session = session
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "agent_actions": self._on_agent_actions,
            "deferred_approval_request": self._on_approval_request,
            "run_complete": self._on_run_complete,
        }

    def dispatch(self, event: Mapping[str, Any]) -> Optional[Any]:
        name = pick(event, "event", "type")
        handler = self._handlers.get(name)
        if handler is None:
            logger.debug("Ignoring event %r", name)
            return None
        return handler(event)

    def _on_agent_actions(self, event: Mapping[str, Any]):
        raws = pick(event, "actions", "agent_actions", "agentActions", default=[])
        run_id = pick(event, "run_id", "runId")
        if run_id:
            raws = [self._with_run(raw, run_id) for raw in raws]
        actions = self.session.ingest(raws)
        logger.debug("Ingested %d action(s) for run %s", len(actions), run_id)
        return actions

    def _on_approval_request(self, event: Mapping[str, Any]):
        approval = self.session.approvals.add(event)
        logger.info("Approval requested for %s (%s)", approval.action_id, approval.action_type)
        return approval

    def _on_run_complete(self, event: Mapping[str, Any]) -> List[Any]:
        run_id = pick(event, "run_id", "runId")
        raws = pick(event, "agent_actions", "agentActions", "actions", default=[])
        if run_id:
            raws = [self._with_run(raw, run_id) for raw in raws]
        actions = self.session.ingest(raws) if raws else []
        if run_id:
            for action in self.session.registry.by_run(run_id):
                self.session.approvals.remove(action.id)
        return actions

    @staticmethod
    def _with_run(raw: Any, run_id: str) -> Any:
        if isinstance(raw, Mapping) and not pick(raw, "run_id", "runId"):
            return {**raw, "run_id": run_id}
        return raw
