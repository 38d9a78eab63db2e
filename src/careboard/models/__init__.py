from .cache import CacheEntry, CacheState, RequestTicket
from .events import ChangeKind, EntityChange, Event, Subscription
from .insight import (
    NO_FALLBACK,
    ExponentialBackoff,
    RequestConfig,
    ResultSource,
    InsightResult,
    ErrorClass,
    InsightError,
    TransientInsightError,
    PermanentInsightError,
    ProducerTimeoutError,
    PolicyExhaustedError,
    ConfigurationError,
)

__all__ = [
    'CacheEntry',
    'CacheState',
    'RequestTicket',
    'ChangeKind',
    'EntityChange',
    'Event',
    'Subscription',
    'NO_FALLBACK',
    'ExponentialBackoff',
    'RequestConfig',
    'ResultSource',
    'InsightResult',
    'ErrorClass',
    'InsightError',
    'TransientInsightError',
    'PermanentInsightError',
    'ProducerTimeoutError',
    'PolicyExhaustedError',
    'ConfigurationError'
]
