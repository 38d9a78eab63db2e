from .audit import AuditRecorder, LoggingAuditRecorder, AuditEntry, AuditOutcome, AuditException, safe_record
from .monitoring import OrchestratorMetrics
from .cache_store import CacheStore
from .fallback_policy import FallbackPolicyEngine, FallbackAction, FallbackDecision
from .request_coordinator import RequestCoordinator
from .subscription_broker import SubscriptionBroker, SubscriptionHandle
from .update_dispatcher import UpdateDispatcher, class_channel, entity_channel
from .config import OrchestratorConfig, ConfigManager, ConfigValidator, ConfigSource, load_config

__all__ = [
    'AuditRecorder',
    'LoggingAuditRecorder',
    'AuditEntry',
    'AuditOutcome',
    'AuditException',
    'safe_record',
    'OrchestratorMetrics',
    'CacheStore',
    'FallbackPolicyEngine',
    'FallbackAction',
    'FallbackDecision',
    'RequestCoordinator',
    'SubscriptionBroker',
    'SubscriptionHandle',
    'UpdateDispatcher',
    'class_channel',
    'entity_channel',
    'OrchestratorConfig',
    'ConfigManager',
    'ConfigValidator',
    'ConfigSource',
    'load_config'
]
