import logging
from typing import Optional, Union

from ..models.events import ChangeKind, EntityChange
from .audit import AuditEntry, AuditOutcome, AuditRecorder, safe_record
from .cache_store import CacheStore
from .subscription_broker import SubscriptionBroker

logger = logging.getLogger(__name__)

ENTITY_CHANNEL_PREFIX = "entity:"


def class_channel(entity_class: str) -> str:
    """Channel carrying every change to an entity class, e.g. "entity:patients"."""
    return f"{ENTITY_CHANNEL_PREFIX}{entity_class}"


def entity_channel(entity_class: str, entity_id: str) -> str:
    """Channel for a single entity, e.g. "entity:patients:p1"."""
    return f"{ENTITY_CHANNEL_PREFIX}{entity_class}:{entity_id}"


class UpdateDispatcher:
    """
    Bridges committed CRUD mutations into cache invalidation and channel events.

    List views subscribe to the class channel and detail views to the entity
    channel; both are fed by the same change.
    """

    def __init__(self, cache_store: CacheStore, broker: SubscriptionBroker,
                 audit_recorder: Optional[AuditRecorder] = None):
        self.cache_store = cache_store
        self.broker = broker
        self.audit_recorder = audit_recorder

    def on_entity_changed(self, entity_class: str, entity_id: str,
                          change_kind: Union[ChangeKind, str]) -> EntityChange:
        """
        Apply a committed change: invalidate derived cache keys, then notify
        the class channel, then the entity channel.

        Raises:
            ValueError: empty entity class or id, or unknown change kind
        """
        if not entity_class or not isinstance(entity_class, str):
            raise ValueError("entity_class must be a non-empty string")
        if entity_id is None or str(entity_id) == "":
            raise ValueError("entity_id must be provided")

        change = EntityChange(
            entity_class=entity_class,
            entity_id=str(entity_id),
            change_kind=ChangeKind.parse(change_kind),
        )

        invalidated = self.cache_store.invalidate_tag(entity_class)
        if invalidated:
            safe_record(self.audit_recorder, AuditEntry(
                subject=class_channel(entity_class),
                outcome=AuditOutcome.INVALIDATED,
                attempt_count=0,
                details={
                    "entity_id": change.entity_id,
                    "change_kind": change.change_kind.value,
                    "invalidated": invalidated,
                },
            ))

        payload = change.to_payload()
        self.broker.publish(class_channel(entity_class), payload)
        self.broker.publish(entity_channel(entity_class, change.entity_id), dict(payload))

        logger.info(
            f"{change.change_kind.value} {entity_class}: invalidated {invalidated} cached insights"
        )
        return change
