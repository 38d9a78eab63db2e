"""
Prometheus metrics for the insight orchestrator.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest

logger = logging.getLogger(__name__)


class OrchestratorMetrics:
    """Collects cache, request and channel metrics in a dedicated registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metrics."""
        self.cache_lookups = Counter(
            'careboard_cache_lookups_total',
            'Cache lookups by resulting entry state',
            ['state'],
            registry=self.registry
        )

        self.cache_invalidations = Counter(
            'careboard_cache_invalidations_total',
            'Cache entries invalidated',
            ['reason'],
            registry=self.registry
        )

        self.producer_invocations = Counter(
            'careboard_producer_invocations_total',
            'Number of producer invocations, retries included',
            registry=self.registry
        )

        self.request_outcomes = Counter(
            'careboard_request_outcomes_total',
            'Terminal outcomes of insight computations',
            ['outcome'],
            registry=self.registry
        )

        self.producer_duration = Histogram(
            'careboard_producer_duration_seconds',
            'Time spent waiting on a single producer attempt',
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0),
            registry=self.registry
        )

        self.tickets_in_flight = Gauge(
            'careboard_tickets_in_flight',
            'Insight computations currently in flight',
            registry=self.registry
        )

        self.events_published = Counter(
            'careboard_events_published_total',
            'Events published to subscription channels',
            registry=self.registry
        )

        self.listener_failures = Counter(
            'careboard_listener_failures_total',
            'Listener callbacks that raised during delivery',
            registry=self.registry
        )

    def record_lookup(self, state: str):
        self.cache_lookups.labels(state=state).inc()

    def record_invalidation(self, reason: str, count: int = 1):
        if count > 0:
            self.cache_invalidations.labels(reason=reason).inc(count)

    def record_outcome(self, outcome: str):
        self.request_outcomes.labels(outcome=outcome).inc()

    def export(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)
