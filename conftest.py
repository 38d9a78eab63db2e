"""
Global pytest configuration for the Careboard insight orchestrator.

Configures the import path, markers and shared fixtures for the cache,
coordinator and broker tests.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

# Add src directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from careboard.services.audit import AuditRecorder  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock for TTL tests."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, millis: float):
        self.current = self.current + timedelta(milliseconds=millis)


class RecordingAuditRecorder(AuditRecorder):
    """Keeps every audit entry for assertions."""

    def __init__(self):
        self.entries = []

    def record(self, entry):
        self.entries.append(entry)

    def outcomes(self, subject=None):
        return [e.outcome for e in self.entries if subject is None or e.subject == subject]


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring multiple components"
    )
    config.addinivalue_line(
        "markers", "unit: Unit tests for individual components"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers."""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)

        if "unit" in item.nodeid:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def audit_recorder():
    return RecordingAuditRecorder()


@pytest.fixture
def mock_audit_recorder():
    """Mock audit recorder for testing."""
    mock = Mock(spec=AuditRecorder)
    mock.record = Mock()
    return mock


@pytest.fixture
def no_backoff():
    """Retry backoff that never waits."""
    return lambda attempt: 0
