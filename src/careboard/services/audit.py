import logging
import hashlib
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional
from dataclasses import dataclass, field
from uuid import uuid4, UUID
from enum import Enum

logger = logging.getLogger(__name__)


class AuditOutcome(Enum):
    SUCCESS = "success"
    STALE_SERVED = "stale_served"
    FALLBACK_USED = "fallback_used"
    PROPAGATED = "propagated"
    LISTENER_FAILED = "listener_failed"
    INVALIDATED = "invalidated"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class AuditEntry:
    subject: str  # cache key or channel
    outcome: AuditOutcome
    attempt_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = field(default_factory=dict)
    audit_id: UUID = field(default_factory=uuid4)

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit entry to dictionary for storage."""
        return {
            "audit_id": str(self.audit_id),
            "subject": self.subject,
            "outcome": self.outcome.value,
            "attempt_count": self.attempt_count,
            "timestamp": self.timestamp.isoformat(),
            "details": _ensure_json_serializable(self.details),
        }


class AuditException(Exception):
    """Exception raised when audit operations fail."""
    pass


class AuditRecorder(ABC):
    """Receives one entry per terminal request outcome and per admin-triggered cache or subscription action."""

    @abstractmethod
    def record(self, entry: AuditEntry) -> None:
        pass


class LoggingAuditRecorder(AuditRecorder):
    """
    Audit recorder that writes every entry to the audit log.

    Entity identifiers found in entry details are hashed before logging so
    patient-level ids never reach log files in clear text. The most recent
    entries are kept in memory for the admin API.
    """

    def __init__(self, history_size: int = 500):
        self.logger = logging.getLogger(__name__)
        self._history: Deque[AuditEntry] = deque(maxlen=history_size)

    def record(self, entry: AuditEntry) -> None:
        if not entry.subject:
            raise AuditException("Audit entry must specify a subject")

        self._history.append(entry)

        details = dict(entry.details)
        if "entity_id" in details:
            details["entity_id"] = _hash_identifier(str(details["entity_id"]))

        self.logger.info(
            f"Audit entry recorded - ID: {entry.audit_id}, Subject: {entry.subject}, "
            f"Outcome: {entry.outcome.value}, Attempts: {entry.attempt_count}, Details: {details}"
        )

    def recent(self, limit: int = 50) -> List[AuditEntry]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def clear(self) -> None:
        self._history.clear()


def safe_record(recorder: Optional[AuditRecorder], entry: AuditEntry) -> bool:
    """Best-effort audit: recorder failures are logged and never reach the caller."""
    if recorder is None:
        return False
    try:
        recorder.record(entry)
        return True
    except Exception as e:
        logger.warning(f"Audit recorder failed for {entry.subject} ({entry.outcome.value}): {e}")
        return False


def _hash_identifier(identifier: str) -> str:
    """Privacy-preserving hash of an entity id for logging."""
    salt = "careboard_audit_salt"
    return hashlib.sha256(f"{salt}{identifier}".encode()).hexdigest()[:16]


def _ensure_json_serializable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(key): _ensure_json_serializable(value) for key, value in obj.items()}
    elif isinstance(obj, (list, tuple, set, frozenset)):
        return [_ensure_json_serializable(item) for item in obj]
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    elif obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    else:
        return str(obj)
