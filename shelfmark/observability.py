"""Shelfmark observability: structured logging and action metrics.

Usage:
    from shelfmark.observability import configure_logging, metrics

    configure_logging(LoggingConfig(level="DEBUG", structured=True))

    metrics.record_apply("edit_metadata", latency_ms=12.5, succeeded=3, failed=1)
    print(metrics.get_summary())
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shelfmark.configs.base import LoggingConfig


# ============================================================================
# Structured logging
# ============================================================================

class StructuredFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Attach one handler to the ``shelfmark`` logger tree."""
    config = config or LoggingConfig()
    root = logging.getLogger("shelfmark")
    root.setLevel(config.level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    if config.structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    return root


# ============================================================================
# Metrics Collector
# ============================================================================

@dataclass
class OperationMetrics:
    """Latency and error counts for one operation type."""
    count: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    errors: int = 0
    last_operation: Optional[str] = None

    def record(self, latency_ms: float, error: bool = False):
        self.count += 1
        self.total_latency_ms += latency_ms
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if error:
            self.errors += 1
        self.last_operation = datetime.now(timezone.utc).isoformat()

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "max_latency_ms": round(self.max_latency_ms, 2),
            "errors": self.errors,
            "last_operation": self.last_operation,
        }


@dataclass
class ActionCounters:
    total_applied: int = 0
    total_apply_failed: int = 0
    total_undone: int = 0
    total_undo_failed: int = 0
    total_rejected: int = 0
    total_acked: int = 0
    total_ack_failed: int = 0
    total_backend_errors: int = 0
    total_needs_confirmation: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class ActionMetrics:
    """Collects action lifecycle metrics. Safe to share across threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._counters = ActionCounters()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(self, operation: str, latency_ms: float, error: bool = False):
        with self._lock:
            self._operations[operation].record(latency_ms, error)

    def record_apply(self, action_type: str, latency_ms: float, succeeded: int = 0, failed: int = 0):
        self.record_operation(f"apply:{action_type}", latency_ms, error=failed > 0)
        with self._lock:
            self._counters.total_applied += succeeded
            self._counters.total_apply_failed += failed

    def record_undo(self, action_type: str, latency_ms: float, succeeded: int = 0, failed: int = 0):
        self.record_operation(f"undo:{action_type}", latency_ms, error=failed > 0)
        with self._lock:
            self._counters.total_undone += succeeded
            self._counters.total_undo_failed += failed

    def record_reject(self, count: int = 1):
        with self._lock:
            self._counters.total_rejected += max(0, int(count))

    def record_ack(self, count: int, error: bool = False):
        with self._lock:
            if error:
                self._counters.total_ack_failed += max(0, int(count))
            else:
                self._counters.total_acked += max(0, int(count))

    def record_backend_error(self, code: str):
        self.record_operation(f"backend_error:{code}", 0, error=True)
        with self._lock:
            self._counters.total_backend_errors += 1

    def record_needs_confirmation(self):
        with self._lock:
            self._counters.total_needs_confirmation += 1

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
            return {
                "uptime_seconds": round(uptime, 2),
                "operations": {op: m.to_dict() for op, m in self._operations.items()},
                "actions": self._counters.to_dict(),
            }

    @contextmanager
    def measure(self, operation: str):
        """Time a block and record it under ``operation``."""
        start = time.perf_counter()
        error = False
        try:
            yield
        except Exception:
            error = True
            raise
        finally:
            self.record_operation(operation, (time.perf_counter() - start) * 1000, error=error)


def elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


metrics = ActionMetrics()
