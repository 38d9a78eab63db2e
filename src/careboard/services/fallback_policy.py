"""
Retry and fallback decisions for failing insight producers.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Type

from ..models.insight import (
    NO_FALLBACK,
    ErrorClass,
    InsightError,
    PolicyExhaustedError,
    RequestConfig,
)

logger = logging.getLogger(__name__)


class FallbackAction(Enum):
    RETRY = "retry"
    USE_STALE_VALUE = "use_stale_value"
    USE_FALLBACK_VALUE = "use_fallback_value"
    PROPAGATE = "propagate"


@dataclass(frozen=True)
class FallbackDecision:
    action: FallbackAction
    value: Any = NO_FALLBACK
    error: Optional[BaseException] = None  # what waiters receive on PROPAGATE
    error_class: Optional[ErrorClass] = None


TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})

PERMANENT_KEYWORDS = ("validation", "invalid", "unauthorized", "forbidden",
                      "permission", "malformed", "not found")
TRANSIENT_KEYWORDS = ("timeout", "timed out", "connection", "network",
                      "unavailable", "rate limit", "too many requests", "temporarily")


class FallbackPolicyEngine:
    """
    Pure decision function consulted by the request coordinator after each
    failed producer attempt.

    Transient errors are retried until the retry budget is spent, then served
    from the retained value if one exists, then from the configured fallback
    value, and otherwise surfaced as PolicyExhaustedError. Permanent errors
    propagate immediately.
    """

    def __init__(self,
                 transient_exceptions: Tuple[Type[BaseException], ...] = (),
                 permanent_exceptions: Tuple[Type[BaseException], ...] = ()):
        self.custom_permanent_exceptions = tuple(permanent_exceptions)
        self.custom_transient_exceptions = tuple(transient_exceptions)
        self.transient_exceptions = (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)
        self.permanent_exceptions = (
            PermissionError, ValueError, TypeError, LookupError, NotImplementedError,
        )

    def classify(self, error: BaseException) -> ErrorClass:
        """Classify an error as TRANSIENT (worth retrying) or PERMANENT."""
        if isinstance(error, InsightError):
            error_class = getattr(error, "error_class", None)
            if error_class is not None:
                return error_class

        # Caller-declared types win over the builtin ones
        if isinstance(error, self.custom_permanent_exceptions):
            return ErrorClass.PERMANENT
        if isinstance(error, self.custom_transient_exceptions):
            return ErrorClass.TRANSIENT

        # Permanent types first: PermissionError is also an OSError
        if isinstance(error, self.permanent_exceptions):
            return ErrorClass.PERMANENT
        if isinstance(error, self.transient_exceptions):
            return ErrorClass.TRANSIENT

        status = getattr(error, "status_code", None)
        if status is None:
            status = getattr(error, "status", None)
        if isinstance(status, int):
            if status in TRANSIENT_STATUS_CODES or status >= 500:
                return ErrorClass.TRANSIENT
            if 400 <= status < 500:
                return ErrorClass.PERMANENT

        message = str(error).lower()
        if any(word in message for word in PERMANENT_KEYWORDS):
            return ErrorClass.PERMANENT
        if any(word in message for word in TRANSIENT_KEYWORDS):
            return ErrorClass.TRANSIENT

        # Unknown failures are retried conservatively
        return ErrorClass.TRANSIENT

    def decide(self,
               error: BaseException,
               attempt: int,
               config: RequestConfig,
               has_retained_value: bool = False,
               key: Optional[str] = None) -> FallbackDecision:
        """
        Decide what the coordinator does after a failed attempt.

        Args:
            error: The exception raised by the producer (or the timeout)
            attempt: 1-based number of the attempt that just failed
            config: Request configuration carrying max_retries and fallback_value
            has_retained_value: True if a previous value for the key is retained
            key: Cache key, used for the PolicyExhaustedError message

        Returns:
            FallbackDecision describing the next step
        """
        error_class = self.classify(error)

        if error_class == ErrorClass.PERMANENT:
            logger.debug(f"Permanent failure for {key} on attempt {attempt}: {error}")
            return FallbackDecision(FallbackAction.PROPAGATE, error=error,
                                    error_class=error_class)

        if attempt <= config.max_retries:
            return FallbackDecision(FallbackAction.RETRY, error_class=error_class)

        if has_retained_value:
            return FallbackDecision(FallbackAction.USE_STALE_VALUE, error_class=error_class)

        if config.has_fallback_value:
            return FallbackDecision(FallbackAction.USE_FALLBACK_VALUE,
                                    value=config.fallback_value, error_class=error_class)

        return FallbackDecision(
            FallbackAction.PROPAGATE,
            error=PolicyExhaustedError(key or "<unknown>", error, attempt),
            error_class=error_class,
        )
