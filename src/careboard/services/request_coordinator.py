"""
Request coordination for expensive insight computations.

Concurrent requests for the same key share one in-flight computation (a
ticket). Fresh cache entries are served without invoking the producer, stale
entries are served immediately while a refresh runs in the background, and
failures go through the fallback policy for retry, stale or substitute values.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..models.cache import CacheEntry, CacheState, RequestTicket
from ..models.insight import (
    InsightResult,
    PolicyExhaustedError,
    ProducerTimeoutError,
    RequestConfig,
    ResultSource,
)
from .audit import AuditEntry, AuditOutcome, AuditRecorder, safe_record
from .cache_store import CacheStore
from .fallback_policy import FallbackAction, FallbackPolicyEngine
from .monitoring import OrchestratorMetrics

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]


class RequestCoordinator:
    """
    Deduplicates concurrent insight requests and owns every cache write
    derived from a producer result.

    Usage:
        coordinator = RequestCoordinator(CacheStore())
        result = await coordinator.request(
            "risk:123",
            lambda: readmission_model.score(patient_id="123"),
            RequestConfig(ttl_millis=60000, source_entity_classes=("patients",)),
        )
        result.value, result.is_stale
    """

    def __init__(self,
                 cache_store: CacheStore,
                 fallback_policy: Optional[FallbackPolicyEngine] = None,
                 audit_recorder: Optional[AuditRecorder] = None,
                 metrics: Optional[OrchestratorMetrics] = None,
                 default_config: Optional[RequestConfig] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        """
        Initialize the coordinator.

        Args:
            cache_store: Store receiving producer results
            fallback_policy: Retry/fallback decision engine
            audit_recorder: Receives one entry per terminal outcome
            metrics: Optional Prometheus metrics
            default_config: Used when request() is called without a config
            sleep: Coroutine used for retry backoff, in seconds
        """
        self._store = cache_store
        self._policy = fallback_policy or FallbackPolicyEngine()
        self._audit = audit_recorder
        self._metrics = metrics
        self._default_config = default_config or RequestConfig()
        self._sleep = sleep or asyncio.sleep

        self._tickets: Dict[str, RequestTicket] = {}
        self._late_attempts: Set[asyncio.Task] = set()

        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "stale_served": 0,
            "joined": 0,
            "producer_invocations": 0,
            "retries": 0,
            "timeouts": 0,
            "successes": 0,
            "fallbacks": 0,
            "propagated": 0,
            "cancelled": 0,
            "late_results_cached": 0,
        }

    @property
    def default_config(self) -> RequestConfig:
        return self._default_config

    async def request(self, key: str, producer: Producer,
                      config: Optional[RequestConfig] = None) -> InsightResult:
        """
        Return the insight for key, computing it at most once per outstanding key.

        Args:
            key: Request fingerprint
            producer: Zero-argument callable returning an awaitable (or a value)
            config: Caching, retry and fallback settings

        Returns:
            InsightResult whose source tells fresh, stale and fallback values apart

        Raises:
            PolicyExhaustedError: transient failures outlasted the retry budget
            Exception: permanent producer errors are re-raised unchanged
        """
        if not isinstance(key, str) or not key:
            raise ValueError("key must be a non-empty string")

        config = config or self._default_config
        self._stats["requests"] += 1

        entry = self._store.get(key)

        if entry is not None and entry.state == CacheState.FRESH:
            logger.debug(f"CACHE HIT (fresh): {key}")
            self._stats["cache_hits"] += 1
            return InsightResult(key=key, value=entry.value, source=ResultSource.CACHE,
                                 attempts=0, produced_at=entry.produced_at)

        if entry is not None and config.stale_while_revalidate:
            logger.info(f"CACHE HIT (stale, revalidating): {key}")
            self._stats["stale_served"] += 1
            self._ensure_ticket(key, producer, config, background=True)
            return InsightResult(key=key, value=entry.value, source=ResultSource.STALE,
                                 attempts=0, produced_at=entry.produced_at)

        ticket = self._tickets.get(key)
        if ticket is not None:
            self._stats["joined"] += 1
            ticket.background = False
            logger.debug(f"Joining in-flight request for {key} (waiters: {ticket.ref_count + 1})")
        else:
            logger.info(f"CACHE MISS: {key}")
            ticket = self._ensure_ticket(key, producer, config, background=False)

        return await self._wait(ticket)

    def in_flight(self, key: str) -> bool:
        return key in self._tickets

    def waiters(self, key: str) -> int:
        ticket = self._tickets.get(key)
        return ticket.ref_count if ticket else 0

    @property
    def active_tickets(self) -> int:
        return len(self._tickets)

    async def drain(self):
        """Wait for every in-flight computation, including timed-out attempts still running."""
        while self._tickets or self._late_attempts:
            pending = [t.future for t in self._tickets.values() if t.future is not None]
            pending.extend(self._late_attempts)
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel every in-flight computation; used at shutdown."""
        tasks = [t.future for t in self._tickets.values() if t.future is not None]
        tasks.extend(self._late_attempts)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Tickets cancelled before their first step never reach their cleanup
        self._tickets.clear()
        return len(tasks)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active_tickets": len(self._tickets),
            "active_keys": sorted(self._tickets),
            "late_attempts": len(self._late_attempts),
        }

    def _ensure_ticket(self, key: str, producer: Producer, config: RequestConfig,
                       background: bool) -> RequestTicket:
        ticket = self._tickets.get(key)
        if ticket is not None:
            return ticket

        ticket = RequestTicket(
            key=key,
            future=None,
            started_at=self._store.now(),
            retained=self._store.retained(key),
            background=background,
            config=config,
        )
        self._tickets[key] = ticket
        ticket.future = asyncio.ensure_future(self._compute(ticket, producer, config))
        ticket.future.add_done_callback(self._on_ticket_done)

        if self._metrics:
            self._metrics.tickets_in_flight.set(len(self._tickets))
        return ticket

    async def _wait(self, ticket: RequestTicket) -> InsightResult:
        ticket.ref_count += 1
        abandoned = False
        try:
            return await asyncio.shield(ticket.future)
        except asyncio.CancelledError:
            # Caller gave up; the shared computation itself is still running
            abandoned = not ticket.future.done()
            raise
        finally:
            ticket.ref_count -= 1
            if abandoned:
                self._on_abandoned(ticket)

    def _on_abandoned(self, ticket: RequestTicket):
        logger.debug(f"Waiter abandoned {ticket.key} (remaining waiters: {ticket.ref_count})")
        if ticket.ref_count > 0 or ticket.background:
            return
        # The ticket's own settings decide, not those of whichever waiter left last
        config = ticket.config or self._default_config
        if not config.cancel_when_abandoned or config.stale_while_revalidate:
            logger.debug(f"No waiters left for {ticket.key}; letting computation finish")
            return

        logger.info(f"Cancelling abandoned computation for {ticket.key}")
        if self._tickets.get(ticket.key) is ticket:
            del self._tickets[ticket.key]
        self._stats["cancelled"] += 1
        ticket.future.cancel()

    async def _compute(self, ticket: RequestTicket, producer: Producer,
                       config: RequestConfig) -> InsightResult:
        key = ticket.key
        try:
            while True:
                ticket.attempt += 1
                generation = self._store.generation(key, config.source_entity_classes)

                try:
                    value = await self._invoke(ticket, producer, config, generation)
                except asyncio.CancelledError:
                    raise
                except Exception as error:
                    retained = self._store.retained(key) or ticket.retained
                    decision = self._policy.decide(
                        error, ticket.attempt, config,
                        has_retained_value=retained is not None, key=key,
                    )

                    if decision.action == FallbackAction.RETRY:
                        delay_millis = config.retry_backoff_millis(ticket.attempt + 1)
                        self._stats["retries"] += 1
                        logger.warning(
                            f"Attempt {ticket.attempt} for {key} failed ({error}); "
                            f"retrying in {delay_millis:.0f}ms"
                        )
                        await self._sleep(delay_millis / 1000.0)
                        continue

                    if decision.action == FallbackAction.USE_STALE_VALUE:
                        self._stats["fallbacks"] += 1
                        logger.warning(
                            f"Serving retained value for {key} after {ticket.attempt} attempts: {error}"
                        )
                        self._record_outcome(ticket, AuditOutcome.STALE_SERVED, error=error)
                        return InsightResult(key=key, value=retained.value,
                                             source=ResultSource.STALE,
                                             attempts=ticket.attempt,
                                             produced_at=retained.produced_at)

                    if decision.action == FallbackAction.USE_FALLBACK_VALUE:
                        self._stats["fallbacks"] += 1
                        logger.warning(
                            f"Serving fallback value for {key} after {ticket.attempt} attempts: {error}"
                        )
                        self._record_outcome(ticket, AuditOutcome.FALLBACK_USED, error=error)
                        return InsightResult(key=key, value=decision.value,
                                             source=ResultSource.FALLBACK,
                                             attempts=ticket.attempt)

                    self._stats["propagated"] += 1
                    logger.error(f"Request for {key} failed after {ticket.attempt} attempts: {error}")
                    self._record_outcome(ticket, AuditOutcome.PROPAGATED, error=decision.error)
                    if isinstance(decision.error, PolicyExhaustedError):
                        raise decision.error from error
                    raise

                entry = self._store_result(key, value, config, generation)
                self._stats["successes"] += 1
                self._record_outcome(ticket, AuditOutcome.SUCCESS)
                return InsightResult(
                    key=key, value=value, source=ResultSource.PRODUCER,
                    attempts=ticket.attempt,
                    produced_at=entry.produced_at if entry else self._store.now(),
                )
        finally:
            if self._tickets.get(key) is ticket:
                del self._tickets[key]
            if self._metrics:
                self._metrics.tickets_in_flight.set(len(self._tickets))

    async def _invoke(self, ticket: RequestTicket, producer: Producer,
                      config: RequestConfig, generation: int) -> Any:
        """Race one producer attempt against timeout_millis without interrupting it."""
        self._stats["producer_invocations"] += 1
        if self._metrics:
            self._metrics.producer_invocations.inc()

        attempt_started = self._store.now()
        started = time.perf_counter()
        attempt = asyncio.ensure_future(_run_producer(producer))
        try:
            done, _ = await asyncio.wait({attempt}, timeout=config.timeout_millis / 1000.0)
        except asyncio.CancelledError:
            attempt.cancel()
            raise
        finally:
            if self._metrics:
                self._metrics.producer_duration.observe(time.perf_counter() - started)

        if attempt in done:
            return attempt.result()

        self._stats["timeouts"] += 1
        self._adopt_late_attempt(ticket.key, attempt, config, generation, attempt_started)
        raise ProducerTimeoutError(ticket.key, config.timeout_millis)

    def _adopt_late_attempt(self, key: str, attempt: asyncio.Task, config: RequestConfig,
                            generation: int, attempt_started: datetime):
        """A timed-out attempt keeps running; if it succeeds it may still populate the cache."""
        self._late_attempts.add(attempt)

        def on_done(task: asyncio.Task):
            self._late_attempts.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.debug(f"Late attempt for {key} failed: {error}")
                return

            current = self._store.retained(key)
            if current is not None and current.produced_at > attempt_started:
                logger.debug(f"Discarding late result for {key}; a newer value is cached")
                return
            if self._store_result(key, task.result(), config, generation) is not None:
                self._stats["late_results_cached"] += 1
                logger.info(f"Cached late result for {key}")

        attempt.add_done_callback(on_done)

    def _store_result(self, key: str, value: Any, config: RequestConfig,
                      generation: int) -> Optional[CacheEntry]:
        if self._store.generation(key, config.source_entity_classes) != generation:
            logger.info(f"Not caching {key}: invalidated while computing")
            return None
        return self._store.put(key, value, config.ttl_millis, tags=config.source_entity_classes)

    def _record_outcome(self, ticket: RequestTicket, outcome: AuditOutcome,
                        error: Optional[BaseException] = None):
        if self._metrics:
            self._metrics.record_outcome(outcome.value)

        details: Dict[str, Any] = {"background": ticket.background}
        if error is not None:
            details["error_type"] = type(error).__name__
            details["error"] = str(error)

        safe_record(self._audit, AuditEntry(
            subject=ticket.key,
            outcome=outcome,
            attempt_count=ticket.attempt,
            details=details,
        ))

    def _on_ticket_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # Background refreshes have no waiter to receive the error
            logger.debug(f"Ticket settled with error: {error!r}")


async def _run_producer(producer: Producer) -> Any:
    result = producer()
    if inspect.isawaitable(result):
        result = await result
    return result
