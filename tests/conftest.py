"""Pytest fixtures and configuration for threatmatch tests.

This test suite supports two modes:
1. Unit tests: Use a mocked Elasticsearch client (default)
2. Integration tests: Use a real Elasticsearch cluster (requires --live flag)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from threatmatch.config import Settings
from threatmatch.schemas.indicator_match import (
    AlertSuppressionConfig,
    IndicatorMatchRuleParams,
    TimeWindow,
)
from tests.factories import RuleParamsFactory, search_response


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Override settings for testing."""
    return Settings(
        app_name="threatmatch-test",
        elasticsearch_url="http://localhost:9200",
        alerts_index=".alerts-threatmatch-test",
        default_items_per_search=9000,
        default_concurrent_searches=1,
        default_max_signals=100,
        telemetry_enabled=False,
    )


# =============================================================================
# Rule Fixtures
# =============================================================================

@pytest.fixture
def rule_params() -> IndicatorMatchRuleParams:
    """Indicator match rule on source.ip."""
    return RuleParamsFactory(rule_id="rule-1", name="Threat Intel IP Match")


@pytest.fixture
def suppressed_rule_params(rule_params) -> IndicatorMatchRuleParams:
    """Same rule with suppression on host.name."""
    return rule_params.model_copy(
        update={
            "alert_suppression": AlertSuppressionConfig(group_by=["host.name"], duration="1h"),
        }
    )


@pytest.fixture
def time_window() -> TimeWindow:
    """Five minute execution window."""
    end = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
    return TimeWindow(start=end - timedelta(minutes=5), end=end)


# =============================================================================
# Service Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_elasticsearch():
    """Mock Elasticsearch client."""
    mock_es = AsyncMock()

    mock_es.search = AsyncMock(return_value=search_response([]))
    mock_es.count = AsyncMock(return_value={"count": 0})
    mock_es.open_point_in_time = AsyncMock(return_value={"id": "pit-1"})
    mock_es.close_point_in_time = AsyncMock(return_value={"succeeded": True})

    mock_es.indices = MagicMock()
    mock_es.indices.exists = AsyncMock(return_value=True)

    return mock_es


@pytest.fixture
def mock_alert_writer():
    """Alert writer that reports every alert as created."""
    from threatmatch.services.alert_writer import BulkCreateResult

    writer = MagicMock()

    async def bulk_create(alerts):
        return BulkCreateResult(created_items=list(alerts), took_ms=1.0)

    writer.bulk_create = AsyncMock(side_effect=bulk_create)
    return writer


@pytest.fixture
def mock_telemetry():
    """Telemetry sink recording what it was sent."""
    sink = MagicMock()
    sink.send_async = MagicMock()
    sink.flush = AsyncMock()
    return sink


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, mocked)")
    config.addinivalue_line("markers", "integration: Integration tests (require services)")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    # Skip integration tests unless --live flag is provided
    if not config.getoption("--live", default=False):
        skip_integration = pytest.mark.skip(reason="Need --live option to run integration tests")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run integration tests against a live Elasticsearch",
    )
