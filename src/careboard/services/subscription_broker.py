"""
Channel-based fan-out of live data-change events to UI subscribers.

Channels are opaque strings matched exactly. Delivery is synchronous and in
subscription order; per-channel sequence numbers start at 1 and increase by
one for every publish.
"""

import itertools
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from ..models.events import Event, Subscription
from .audit import AuditEntry, AuditOutcome, AuditRecorder, safe_record
from .monitoring import OrchestratorMetrics

logger = logging.getLogger(__name__)

Listener = Callable[[Event], Any]


class SubscriptionHandle:
    """
    Unsubscribe capability returned by SubscriptionBroker.subscribe.

    Calling the handle (or unsubscribe()) removes the listener; further calls
    are no-ops.
    """

    def __init__(self, broker: "SubscriptionBroker", subscription: Subscription):
        self._broker = broker
        self._subscription = subscription

    @property
    def channel(self) -> str:
        return self._subscription.channel

    @property
    def listener_id(self) -> int:
        return self._subscription.listener_id

    @property
    def active(self) -> bool:
        return self._subscription.active

    def unsubscribe(self) -> bool:
        return self._broker._remove(self._subscription)

    def __call__(self) -> bool:
        return self.unsubscribe()

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<SubscriptionHandle {self.channel}#{self.listener_id} {state}>"


class SubscriptionBroker:
    """
    Registry of channel -> listeners with ordered synchronous delivery.

    - Delivery order on a channel is subscription order (FIFO)
    - Listeners added while an event is being delivered do not receive it
    - Listeners removed before their turn are skipped
    - Publishing from inside a listener queues the event behind the one
      currently being delivered on that channel
    - A listener that raises is logged and audited; delivery continues
    """

    def __init__(self,
                 audit_recorder: Optional[AuditRecorder] = None,
                 metrics: Optional[OrchestratorMetrics] = None,
                 audit_subscriptions: bool = True):
        self._audit = audit_recorder
        self._metrics = metrics
        self._audit_subscriptions = audit_subscriptions

        self._channels: Dict[str, Dict[int, Subscription]] = {}
        self._sequences: Dict[str, int] = {}
        self._pending: Dict[str, Deque[Tuple[Event, List[Subscription]]]] = {}
        self._delivering: Set[str] = set()
        self._listener_ids = itertools.count(1)

        self._stats = {
            "subscriptions": 0,
            "unsubscriptions": 0,
            "events_published": 0,
            "deliveries": 0,
            "listener_failures": 0,
        }

    def subscribe(self, channel: str, listener: Listener) -> SubscriptionHandle:
        """
        Register listener on channel.

        Args:
            channel: Channel name, e.g. "entity:patients" or "insight:readmission-risk"
            listener: Callable receiving one Event per publish

        Returns:
            Handle that removes the listener when called
        """
        if not isinstance(channel, str) or not channel:
            raise ValueError("channel must be a non-empty string")
        if not callable(listener):
            raise TypeError("listener must be callable")

        subscription = Subscription(
            channel=channel,
            listener_id=next(self._listener_ids),
            callback=listener,
            subscribed_at=datetime.now(timezone.utc),
        )
        self._channels.setdefault(channel, {})[subscription.listener_id] = subscription
        self._stats["subscriptions"] += 1

        logger.debug(f"Listener {subscription.listener_id} subscribed to {channel}")
        if self._audit_subscriptions:
            self._record(channel, AuditOutcome.SUBSCRIBED, listener_id=subscription.listener_id)

        return SubscriptionHandle(self, subscription)

    def publish(self, channel: str, payload: Any) -> Event:
        """
        Assign the next sequence number for channel and deliver to its listeners.

        Never raises because of a listener failure.

        Returns:
            The published Event
        """
        if not isinstance(channel, str) or not channel:
            raise ValueError("channel must be a non-empty string")

        sequence = self._sequences.get(channel, 0) + 1
        self._sequences[channel] = sequence
        event = Event(
            channel=channel,
            payload=payload,
            sequence=sequence,
            published_at=datetime.now(timezone.utc),
        )
        self._stats["events_published"] += 1
        if self._metrics:
            self._metrics.events_published.inc()

        # Recipients are fixed at publish time
        snapshot = list(self._channels.get(channel, {}).values())
        queue = self._pending.setdefault(channel, deque())
        queue.append((event, snapshot))

        if channel in self._delivering:
            logger.debug(f"Queued {channel}#{sequence} behind in-progress delivery")
            return event

        self._drain(channel)
        return event

    def listener_count(self, channel: str) -> int:
        return len(self._channels.get(channel, {}))

    def channels(self) -> List[str]:
        return sorted(self._channels)

    def last_sequence(self, channel: str) -> int:
        return self._sequences.get(channel, 0)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "channels": len(self._channels),
            "listeners": sum(len(subs) for subs in self._channels.values()),
            "listeners_by_channel": {
                channel: len(subs) for channel, subs in sorted(self._channels.items())
            },
        }

    def _drain(self, channel: str):
        self._delivering.add(channel)
        try:
            queue = self._pending[channel]
            while queue:
                event, recipients = queue.popleft()
                for subscription in recipients:
                    if not subscription.active:
                        continue
                    self._deliver(subscription, event)
        finally:
            self._delivering.discard(channel)
            if not self._pending.get(channel):
                self._pending.pop(channel, None)

    def _deliver(self, subscription: Subscription, event: Event):
        try:
            subscription.callback(event)
            subscription.delivered += 1
            self._stats["deliveries"] += 1
        except Exception as e:
            subscription.failures += 1
            self._stats["listener_failures"] += 1
            if self._metrics:
                self._metrics.listener_failures.inc()
            logger.error(
                f"Listener {subscription.listener_id} on {event.channel} failed "
                f"for event #{event.sequence}: {e}",
                exc_info=True,
            )
            self._record(
                event.channel,
                AuditOutcome.LISTENER_FAILED,
                listener_id=subscription.listener_id,
                sequence=event.sequence,
                error_type=type(e).__name__,
                error=str(e),
            )

    def _remove(self, subscription: Subscription) -> bool:
        if not subscription.active:
            return False
        subscription.active = False

        listeners = self._channels.get(subscription.channel)
        if listeners is not None:
            listeners.pop(subscription.listener_id, None)
            if not listeners:
                del self._channels[subscription.channel]

        self._stats["unsubscriptions"] += 1
        logger.debug(f"Listener {subscription.listener_id} unsubscribed from {subscription.channel}")
        if self._audit_subscriptions:
            self._record(subscription.channel, AuditOutcome.UNSUBSCRIBED,
                         listener_id=subscription.listener_id)
        return True

    def _record(self, channel: str, outcome: AuditOutcome, **details):
        safe_record(self._audit, AuditEntry(
            subject=channel,
            outcome=outcome,
            attempt_count=0,
            details=details,
        ))
