import random
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


class _NoFallback:
    def __repr__(self) -> str:
        return "NO_FALLBACK"

    def __bool__(self) -> bool:
        return False


NO_FALLBACK = _NoFallback()


@dataclass
class ExponentialBackoff:
    """Delay in milliseconds before retry number ``attempt`` (attempt 2 is the first retry)."""
    base_delay_millis: float = 200.0
    max_delay_millis: float = 5000.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __call__(self, attempt: int) -> float:
        retry_number = max(1, attempt - 1)
        delay = self.base_delay_millis * (self.exponential_base ** (retry_number - 1))
        delay = min(delay, self.max_delay_millis)

        if self.jitter:
            jitter_amount = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)


@dataclass
class RequestConfig:
    """Per-request caching, retry and fallback behaviour."""
    ttl_millis: int = 60000
    stale_while_revalidate: bool = True
    max_retries: int = 2
    retry_backoff_millis: Callable[[int], float] = field(default_factory=ExponentialBackoff)
    timeout_millis: float = 15000
    source_entity_classes: Tuple[str, ...] = ()
    fallback_value: Any = NO_FALLBACK
    cancel_when_abandoned: bool = False

    def __post_init__(self):
        if self.ttl_millis < 0:
            raise ConfigurationError("ttl_millis must be non-negative")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be non-negative")
        if self.timeout_millis <= 0:
            raise ConfigurationError("timeout_millis must be positive")
        if isinstance(self.source_entity_classes, str):
            self.source_entity_classes = (self.source_entity_classes,)
        else:
            self.source_entity_classes = tuple(self.source_entity_classes)

    @property
    def has_fallback_value(self) -> bool:
        return self.fallback_value is not NO_FALLBACK


class ResultSource(Enum):
    CACHE = "cache"          # fresh cache hit
    PRODUCER = "producer"    # computed for this request
    STALE = "stale"          # outdated value, refresh may be running
    FALLBACK = "fallback"    # substitute value supplied by the policy


@dataclass
class InsightResult:
    key: str
    value: Any
    source: ResultSource
    attempts: int = 0
    produced_at: Optional[datetime] = None

    @property
    def is_stale(self) -> bool:
        return self.source in (ResultSource.STALE, ResultSource.FALLBACK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "source": self.source.value,
            "attempts": self.attempts,
            "produced_at": self.produced_at.isoformat() if self.produced_at else None,
            "is_stale": self.is_stale,
        }


class ErrorClass(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class InsightError(Exception):
    """Base exception for insight orchestration errors"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class TransientInsightError(InsightError):
    """Timeouts, connectivity problems and rate limits; safe to retry"""
    error_class = ErrorClass.TRANSIENT


class PermanentInsightError(InsightError):
    """Validation, authorization and malformed requests; never retried"""
    error_class = ErrorClass.PERMANENT


class ProducerTimeoutError(TransientInsightError):
    """Raised when a producer does not settle within timeout_millis"""

    def __init__(self, key: str, timeout_millis: float):
        super().__init__(f"Producer for {key} timed out after {timeout_millis:.0f}ms", key=key)
        self.timeout_millis = timeout_millis


class PolicyExhaustedError(InsightError):
    """Raised when transient failures outlast the retry budget and nothing can be served instead"""

    def __init__(self, key: str, cause: BaseException, attempts: int):
        super().__init__(
            f"Insight {key} still failing after {attempts} attempts: {cause}", key=key
        )
        self.cause = cause
        self.attempts = attempts


class ConfigurationError(InsightError):
    """Raised when orchestrator settings fail validation"""
    pass
