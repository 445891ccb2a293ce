"""BatchExecutor: bounded-concurrency runner for same-kind action batches.

Host-side calls are the only thing parallelized; the caller applies every
local state change after the batch returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Sequence

from shelfmark.core.models import AgentAction

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 3


@dataclass
class BatchSuccess:
    action: AgentAction
    result: Any = None


@dataclass
class BatchFailure:
    action: AgentAction
    error: BaseException


@dataclass
class BatchResult:
    successes: List[BatchSuccess] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class BatchExecutor:
    """Runs one async callable per action with at most ``max_concurrency`` in flight.

    A failing action never cancels its siblings; its exception is captured
    in the result instead.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        self._max_concurrency = max(1, int(max_concurrency))

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def run(
        self,
        actions: Sequence[AgentAction],
        fn: Callable[[AgentAction], Awaitable[Any]],
    ) -> BatchResult:
        if not actions:
            return BatchResult()
        kinds = {a.action_type for a in actions}
        if len(kinds) > 1:
            raise ValueError(
                "Batch must contain a single action type, got: "
                + ", ".join(sorted(str(getattr(k, "value", k)) for k in kinds))
            )

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run_one(action: AgentAction):
            async with semaphore:
                try:
                    return True, await fn(action)
                except Exception as e:
                    logger.warning("Action %s failed: %s", action.id, e)
                    return False, e

        outcomes = await asyncio.gather(*(_run_one(a) for a in actions))

        result = BatchResult()
        for action, (succeeded, value) in zip(actions, outcomes):
            if succeeded:
                result.successes.append(BatchSuccess(action, value))
            else:
                result.failures.append(BatchFailure(action, value))
        return result
