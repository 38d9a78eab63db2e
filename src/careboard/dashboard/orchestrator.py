"""
Insight orchestrator for the admin dashboard.

Wires the cache store, request coordinator, fallback policy, subscription
broker and update dispatcher together and hands widgets a single object to
request insights and subscribe to live changes.
"""

import dataclasses
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ..models.events import ChangeKind, EntityChange
from ..models.insight import InsightResult, RequestConfig
from ..services.audit import AuditEntry, AuditOutcome, AuditRecorder, LoggingAuditRecorder, safe_record
from ..services.cache_store import CacheStore
from ..services.config import OrchestratorConfig
from ..services.fallback_policy import FallbackPolicyEngine
from ..services.monitoring import OrchestratorMetrics
from ..services.request_coordinator import Producer, RequestCoordinator
from ..services.subscription_broker import Listener, SubscriptionBroker, SubscriptionHandle
from ..services.update_dispatcher import UpdateDispatcher

logger = logging.getLogger(__name__)


def fingerprint(namespace: str, **params) -> str:
    """
    Stable cache key for a parameterised insight request.

    fingerprint("risk:readmission", patient_id="123", horizon_days=30)
    -> "risk:readmission:<md5 of sorted params>"
    """
    if not params:
        return namespace
    key_string = json.dumps(sorted(params.items()), sort_keys=True, default=str)
    return f"{namespace}:{hashlib.md5(key_string.encode()).hexdigest()}"


class InsightOrchestrator:
    """Constructor-injected bundle of the orchestration components."""

    def __init__(self,
                 config: Optional[OrchestratorConfig] = None,
                 audit_recorder: Optional[AuditRecorder] = None,
                 metrics: Optional[OrchestratorMetrics] = None,
                 fallback_policy: Optional[FallbackPolicyEngine] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep=None):
        self.config = config or OrchestratorConfig()
        logging.getLogger("careboard").setLevel(self.config.log_level)

        if audit_recorder is None and self.config.audit_enabled:
            audit_recorder = LoggingAuditRecorder(history_size=self.config.audit_history_size)
        if metrics is None and self.config.metrics_enabled:
            metrics = OrchestratorMetrics()

        self.audit_recorder = audit_recorder
        self.metrics = metrics

        self.cache_store = CacheStore(clock=clock, metrics=metrics)
        self.coordinator = RequestCoordinator(
            self.cache_store,
            fallback_policy=fallback_policy,
            audit_recorder=audit_recorder,
            metrics=metrics,
            default_config=self.config.request_config(),
            sleep=sleep,
        )
        self.broker = SubscriptionBroker(
            audit_recorder=audit_recorder,
            metrics=metrics,
            audit_subscriptions=self.config.audit_subscriptions,
        )
        self.dispatcher = UpdateDispatcher(self.cache_store, self.broker, audit_recorder)

        logger.info(f"Insight orchestrator ready ({self.config.environment})")

    async def request(self, key: str, producer: Producer,
                      config: Optional[RequestConfig] = None, **overrides) -> InsightResult:
        """
        Request an insight. Keyword overrides (ttl_millis, max_retries,
        source_entity_classes, ...) are applied on top of the explicit
        RequestConfig, or of the configured defaults when none is passed.
        """
        if overrides:
            if config is None:
                config = self.config.request_config(**overrides)
            else:
                config = dataclasses.replace(config, **overrides)
        return await self.coordinator.request(key, producer, config)

    def subscribe(self, channel: str, listener: Listener) -> SubscriptionHandle:
        return self.broker.subscribe(channel, listener)

    def publish(self, channel: str, payload: Any):
        return self.broker.publish(channel, payload)

    def on_entity_changed(self, entity_class: str, entity_id: str,
                          change_kind: Union[ChangeKind, str]) -> EntityChange:
        return self.dispatcher.on_entity_changed(entity_class, entity_id, change_kind)

    def invalidate(self, key: str, actor: Optional[str] = None) -> bool:
        """Admin-triggered invalidation of a single key."""
        invalidated = self.cache_store.invalidate(key)
        self._audit_admin_action(key, invalidated=int(invalidated), actor=actor)
        return invalidated

    def invalidate_by_prefix(self, prefix: str, actor: Optional[str] = None) -> int:
        """Admin-triggered invalidation of every key starting with prefix."""
        count = self.cache_store.invalidate_by_prefix(prefix)
        self._audit_admin_action(prefix, invalidated=count, actor=actor, prefix=True)
        return count

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "cache": self.cache_store.get_statistics(),
            "requests": self.coordinator.get_statistics(),
            "subscriptions": self.broker.get_statistics(),
            "timestamp": self.cache_store.now().isoformat(),
        }

    async def shutdown(self, wait: bool = False):
        """Stop outstanding computations, or wait for them when wait is True."""
        if wait:
            await self.coordinator.drain()
            return
        cancelled = await self.coordinator.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight computations")

    def _audit_admin_action(self, subject: str, **details):
        safe_record(self.audit_recorder, AuditEntry(
            subject=subject,
            outcome=AuditOutcome.INVALIDATED,
            attempt_count=0,
            details=details,
        ))
