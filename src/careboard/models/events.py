from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict


class ChangeKind(Enum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"

    @classmethod
    def parse(cls, value) -> "ChangeKind":
        """Accept a ChangeKind or its name/value in any case."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for kind in cls:
                if normalized in (kind.value.lower(), kind.name.lower()):
                    return kind
        raise ValueError(f"Unknown change kind: {value!r}")


@dataclass(frozen=True)
class Event:
    channel: str
    payload: Any
    sequence: int
    published_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "payload": self.payload,
            "sequence": self.sequence,
            "published_at": self.published_at.isoformat(),
        }


@dataclass
class Subscription:
    """A listener registered on one channel."""
    channel: str
    listener_id: int
    callback: Callable[[Event], Any]
    subscribed_at: datetime
    active: bool = True
    delivered: int = 0
    failures: int = 0


@dataclass(frozen=True)
class EntityChange:
    """A committed CRUD mutation reported by the domain-data layer."""
    entity_class: str
    entity_id: str
    change_kind: ChangeKind

    def to_payload(self) -> Dict[str, str]:
        return {"entityId": self.entity_id, "changeKind": self.change_kind.value}
