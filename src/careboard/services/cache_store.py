"""
Keyed, TTL-aware store of computed insight results.

Freshness is computed lazily on read from ``produced_at`` and ``ttl_millis``;
the store never runs a background sweep. Invalidation is a logical delete:
the entry reads as absent but its last value stays retained so a failing
recomputation can still fall back to it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..models.cache import CacheEntry, CacheState
from .monitoring import OrchestratorMetrics

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:

    def __init__(self,
                 clock: Optional[Callable[[], datetime]] = None,
                 metrics: Optional[OrchestratorMetrics] = None):
        self._clock = clock or utc_now
        self._metrics = metrics
        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = {}  # tag -> keys derived from it
        self._generations: Dict[str, int] = {}
        self._tag_generations: Dict[str, int] = {}
        self._prefix_generations: Dict[str, int] = {}
        self._stats = {
            "puts": 0,
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "invalidations": 0,
        }

    def now(self) -> datetime:
        return self._clock()

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Look up an entry without modifying the store.

        Returns:
            A snapshot of the entry with its current state (FRESH or STALE),
            or None when absent or invalidated
        """
        entry = self._entries.get(key)
        if entry is None:
            self._count_lookup("miss")
            return None

        state = entry.state_at(self._clock())
        if state == CacheState.INVALIDATED:
            self._count_lookup("miss")
            return None

        self._count_lookup(state.value)
        return CacheEntry(
            key=entry.key,
            value=entry.value,
            produced_at=entry.produced_at,
            ttl_millis=entry.ttl_millis,
            state=state,
            tags=entry.tags,
        )

    def put(self, key: str, value: Any, ttl_millis: int,
            tags: Iterable[str] = ()) -> Optional[CacheEntry]:
        """
        Store a value as FRESH, overwriting any existing entry for the key.

        A ttl of 0 means "never cache": nothing is stored and None is returned.
        """
        if ttl_millis < 0:
            raise ValueError("ttl_millis must be non-negative")
        if ttl_millis == 0:
            logger.debug(f"Skipping cache write for {key} (ttl=0)")
            return None

        self._unindex(key)

        entry = CacheEntry(
            key=key,
            value=value,
            produced_at=self._clock(),
            ttl_millis=ttl_millis,
            state=CacheState.FRESH,
            tags=frozenset(tags),
        )
        self._entries[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

        self._stats["puts"] += 1
        logger.debug(f"Cached {key} [ttl={ttl_millis}ms, tags={sorted(entry.tags)}]")
        return entry

    def invalidate(self, key: str) -> bool:
        """
        Mark an entry invalidated; subsequent get() returns None.

        Returns:
            True if a live entry was invalidated
        """
        invalidated = self._invalidate_key(key)
        if invalidated:
            logger.info(f"Invalidated cache: {key}")
            self._record_invalidations("key", 1)
        return invalidated

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Invalidate every live entry whose key starts with prefix."""
        # Also covers keys whose first computation has not stored anything yet
        self._prefix_generations[prefix] = self._prefix_generations.get(prefix, 0) + 1
        count = sum(
            1 for key in [k for k in self._entries if k.startswith(prefix)]
            if self._invalidate_key(key)
        )
        if count:
            logger.info(f"Invalidated {count} entries with prefix '{prefix}'")
            self._record_invalidations("prefix", count)
        return count

    def invalidate_tag(self, tag: str) -> int:
        """Invalidate every entry registered as derived from tag."""
        self._tag_generations[tag] = self._tag_generations.get(tag, 0) + 1
        keys = sorted(self._tag_index.get(tag, ()))
        count = sum(1 for key in keys if self._invalidate_key(key))
        if count:
            logger.info(f"Invalidated {count} entries derived from '{tag}'")
            self._record_invalidations("tag", count)
        return count

    def retained(self, key: str) -> Optional[CacheEntry]:
        """The last stored entry for key in whatever state it is in."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return CacheEntry(
            key=entry.key,
            value=entry.value,
            produced_at=entry.produced_at,
            ttl_millis=entry.ttl_millis,
            state=entry.state_at(self._clock()),
            tags=entry.tags,
        )

    def generation(self, key: str, tags: Iterable[str] = ()) -> int:
        """
        Changes whenever key, any of the given tags, or a prefix of key is invalidated.

        A computation compares the value taken when it started with the value
        at completion and skips caching when they differ.
        """
        return (
            self._generations.get(key, 0)
            + sum(self._tag_generations.get(tag, 0) for tag in set(tags))
            + sum(count for prefix, count in self._prefix_generations.items()
                  if key.startswith(prefix))
        )

    def keys_for_tag(self, tag: str) -> List[str]:
        return sorted(self._tag_index.get(tag, ()))

    def discard(self, key: str) -> bool:
        """Physically remove an entry, retained value included."""
        if key not in self._entries:
            return False
        self._unindex(key)
        del self._entries[key]
        self._bump_generation(key)
        return True

    def clear(self) -> int:
        count = len(self._entries)
        for key in list(self._entries):
            self._bump_generation(key)
        self._entries.clear()
        self._tag_index.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def keys(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get_statistics(self) -> Dict[str, Any]:
        now = self._clock()
        states = {state.value: 0 for state in CacheState}
        for entry in self._entries.values():
            states[entry.state_at(now).value] += 1

        total_lookups = self._stats["hits_fresh"] + self._stats["hits_stale"] + self._stats["misses"]
        hit_rate = self._stats["hits_fresh"] / total_lookups if total_lookups > 0 else 0

        return {
            "entries": len(self._entries),
            "states": states,
            "tags": len(self._tag_index),
            **self._stats,
            "hit_rate": round(hit_rate, 3),
        }

    def _invalidate_key(self, key: str) -> bool:
        entry = self._entries.get(key)
        self._bump_generation(key)
        if entry is None or entry.state == CacheState.INVALIDATED:
            return False
        entry.state = CacheState.INVALIDATED
        self._stats["invalidations"] += 1
        return True

    def _bump_generation(self, key: str):
        self._generations[key] = self._generations.get(key, 0) + 1

    def _unindex(self, key: str):
        previous = self._entries.get(key)
        if previous is None:
            return
        for tag in previous.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def _count_lookup(self, state: str):
        if state == "fresh":
            self._stats["hits_fresh"] += 1
        elif state == "stale":
            self._stats["hits_stale"] += 1
        else:
            self._stats["misses"] += 1
        if self._metrics:
            self._metrics.record_lookup(state)

    def _record_invalidations(self, reason: str, count: int):
        if self._metrics:
            self._metrics.record_invalidation(reason, count)
