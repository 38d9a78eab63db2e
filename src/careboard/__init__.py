"""
Careboard insight orchestrator.

Caches and deduplicates expensive dashboard insight computations, fans out
live entity-change events to subscribed widgets and applies retry/fallback
policy when the insight backend misbehaves.
"""

from .dashboard.orchestrator import InsightOrchestrator, fingerprint
from .models import (
    ChangeKind,
    InsightResult,
    RequestConfig,
    ResultSource,
    TransientInsightError,
    PermanentInsightError,
    PolicyExhaustedError,
)
from .services.config import OrchestratorConfig, load_config

__version__ = "0.1.0"

__all__ = [
    "InsightOrchestrator",
    "fingerprint",
    "ChangeKind",
    "InsightResult",
    "RequestConfig",
    "ResultSource",
    "TransientInsightError",
    "PermanentInsightError",
    "PolicyExhaustedError",
    "OrchestratorConfig",
    "load_config",
]
