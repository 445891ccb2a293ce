import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class BatchConfig(BaseModel):
    """Bounded concurrency for batch apply/undo."""
    max_concurrency: int = 3    # host-side calls in flight per batch

    @field_validator("max_concurrency")
    @classmethod
    def _clamp_concurrency(cls, v: int) -> int:
        return min(16, max(1, int(v)))


class UpdateBatchConfig(BaseModel):
    """Coalescing of per-action status updates sent to the backend."""
    flush_interval_ms: int = 100
    max_pending: int = 25       # distinct action ids that force an immediate flush

    @field_validator("flush_interval_ms")
    @classmethod
    def _clamp_interval(cls, v: int) -> int:
        return min(10_000, max(0, int(v)))

    @field_validator("max_pending")
    @classmethod
    def _clamp_pending(cls, v: int) -> int:
        return min(500, max(1, int(v)))


class BackendConfig(BaseModel):
    api_url: Optional[str] = None   # hosted backend when set, in-process otherwise
    api_key: Optional[str] = None
    timeout_seconds: float = 60.0

    @field_validator("api_url")
    @classmethod
    def _strip_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip().rstrip("/")
        return v or None

    @field_validator("timeout_seconds")
    @classmethod
    def _min_timeout(cls, v: float) -> float:
        return max(0.1, float(v))


class LifecycleConfig(BaseModel):
    strict_transitions: bool = False        # raise instead of skipping forbidden transitions
    reconcile_on_ack_failure: bool = True   # queue failed acknowledgements for reconcile()


class LoggingConfig(BaseModel):
    level: str = "INFO"
    structured: bool = False    # JSON lines instead of plain text

    @field_validator("level")
    @classmethod
    def _valid_level(cls, v: str) -> str:
        v = str(v).strip().upper()
        if v not in _VALID_LOG_LEVELS:
            raise ValueError(f"Unknown log level '{v}'. Valid: {sorted(_VALID_LOG_LEVELS)}")
        return v


class ShelfmarkConfig(BaseModel):
    batch: BatchConfig = Field(default_factory=BatchConfig)
    updates: UpdateBatchConfig = Field(default_factory=UpdateBatchConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "ShelfmarkConfig":
        """Defaults overlaid with SHELFMARK_* environment variables."""
        config = cls()
        api_url = os.environ.get("SHELFMARK_API_URL")
        if api_url:
            config.backend = BackendConfig(
                api_url=api_url,
                api_key=os.environ.get("SHELFMARK_API_KEY"),
                timeout_seconds=config.backend.timeout_seconds,
            )
        level = os.environ.get("SHELFMARK_LOG_LEVEL")
        if level:
            config.logging = LoggingConfig(level=level, structured=config.logging.structured)
        concurrency = os.environ.get("SHELFMARK_MAX_CONCURRENCY")
        if concurrency:
            config.batch = BatchConfig(max_concurrency=int(concurrency))
        return config
