"""
Dashboard-facing entry points for the insight orchestrator
"""

from .orchestrator import InsightOrchestrator, fingerprint

__all__ = [
    "InsightOrchestrator",
    "fingerprint"
]
