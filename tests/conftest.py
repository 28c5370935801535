"""Pytest configuration for all tests."""

import pytest
from prometheus_client import CollectorRegistry

from src.ghbots.metrics import BotMetrics


@pytest.fixture
def registry():
    """An isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    """Metrics bound to an isolated registry."""
    return BotMetrics(registry=registry)
