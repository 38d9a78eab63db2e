import asyncio
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .insight import RequestConfig


class CacheState(Enum):
    FRESH = "fresh"
    STALE = "stale"
    INVALIDATED = "invalidated"


@dataclass
class CacheEntry:
    """Computed result stored under a request fingerprint."""
    key: str
    value: Any
    produced_at: datetime
    ttl_millis: int
    state: CacheState = CacheState.FRESH
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def age_millis(self, now: datetime) -> float:
        return (now - self.produced_at).total_seconds() * 1000.0

    def state_at(self, now: datetime) -> CacheState:
        """Freshness is derived at read time; an invalidated entry stays invalidated."""
        if self.state == CacheState.INVALIDATED:
            return CacheState.INVALIDATED
        if self.age_millis(now) > self.ttl_millis:
            return CacheState.STALE
        return CacheState.FRESH

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        return {
            "key": self.key,
            "state": self.state_at(now).value,
            "produced_at": self.produced_at.isoformat(),
            "ttl_millis": self.ttl_millis,
            "age_millis": round(self.age_millis(now), 1),
            "tags": sorted(self.tags),
        }


@dataclass
class RequestTicket:
    """One in-flight computation shared by every caller that joined it."""
    key: str
    future: Optional[asyncio.Task]
    started_at: datetime
    ref_count: int = 0
    attempt: int = 0
    retained: Optional[CacheEntry] = None
    background: bool = False
    config: Optional[RequestConfig] = None  # settings of the request that created it

    @property
    def settled(self) -> bool:
        return self.future is not None and self.future.done()
