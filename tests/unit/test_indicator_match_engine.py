"""Unit tests for the indicator match engine service."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from threatmatch import main
from threatmatch.detection.indicator_match.ordering import LicenseTier
from threatmatch.detection.indicator_match.queries import encode_named_query
from threatmatch.detection.indicator_match.types import CrossMatchResult
from threatmatch.exceptions import CardinalityProbeError, InvalidRuleIntervalError
from threatmatch.services.indicator_match_engine import IndicatorMatchEngine
from tests.factories import make_hit, search_response


pytestmark = pytest.mark.unit


EVENT_PAGE = [
    make_hit("e1", sort=[1_700_000_000_002], fields={"source.ip": ["10.0.0.1"]}),
    make_hit("e2", sort=[1_700_000_000_001], fields={"source.ip": ["10.0.0.2"]}),
]
EVENT_DOCS = [
    make_hit(
        "e1",
        sort=[1_700_000_000_002],
        source={"@timestamp": "2026-01-15T11:58:00Z", "source": {"ip": "10.0.0.1"}},
    )
]
INDICATOR_PAGE = [
    make_hit(
        "ioc-1",
        index="logs-ti_test",
        sort=[1_700_000_000_000],
        fields={"threat.indicator.ip": ["10.0.0.1"]},
    )
]


def _lookup_hits():
    return [
        make_hit(
            "ioc-1",
            index="logs-ti_test",
            sort=[1_700_000_000_000],
            source={"threat": {"indicator": {"ip": "10.0.0.1"}, "feed": {"name": "abuse.ch"}}},
            matched_queries=[encode_named_query("e1", "logs-test", 0)],
        )
    ]


def _wire(mock_elasticsearch, event_count, indicator_count):
    """Route counts and searches the way a small cluster would answer them."""

    async def count(index, query, **kwargs):
        if index == ["logs-ti_*"]:
            return {"count": indicator_count}
        return {"count": event_count}

    async def search(**kwargs):
        first_page = kwargs.get("search_after") is None
        if "pit" in kwargs:
            if kwargs["source"] is False:
                return search_response(INDICATOR_PAGE if first_page else [], pit_id="pit-2")
            return search_response(_lookup_hits(), pit_id="pit-2")
        if kwargs["source"] is True:
            return search_response(EVENT_DOCS)
        return search_response(EVENT_PAGE if first_page else [])

    mock_elasticsearch.count = AsyncMock(side_effect=count)
    mock_elasticsearch.search = AsyncMock(side_effect=search)
    return mock_elasticsearch


@pytest.fixture
def engine_factory(test_settings, mock_telemetry, mock_alert_writer):
    def _make(es):
        return IndicatorMatchEngine(
            es,
            settings=test_settings,
            telemetry=mock_telemetry,
            alert_writer=mock_alert_writer,
        )

    return _make


class TestIndicatorMatchEngine:
    """Tests for a full rule execution against a mocked cluster."""

    @pytest.mark.asyncio
    async def test_events_drive_when_smaller(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test a small event list is paged and matched against indicators."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)

        result = await engine_factory(es).execute(rule_params, time_window)

        assert result.success is True
        assert result.created_signals_count == 1
        alert = result.created_signals[0]
        assert alert["alert"]["ancestors"] == [{"id": "e1", "index": "logs-test"}]
        assert alert["event"]["threat"]["enrichments"][0]["matched"]["atomic"] == "10.0.0.1"

        first_search = es.search.call_args_list[0].kwargs
        assert first_search["index"] == ["logs-*"]
        assert first_search["sort"][0]["@timestamp"]["order"] == "desc"
        assert first_search["size"] == 9000

    @pytest.mark.asyncio
    async def test_indicators_drive_when_smaller(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test a small indicator list is paged through the point in time."""
        es = _wire(mock_elasticsearch, event_count=1_000, indicator_count=1)

        result = await engine_factory(es).execute(rule_params, time_window)

        assert result.created_signals_count == 1
        first_search = es.search.call_args_list[0].kwargs
        assert first_search["pit"]["id"] == "pit-1"
        assert first_search["fields"] == ["threat.indicator.ip"]

    @pytest.mark.asyncio
    async def test_pit_closed_with_latest_id(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test the point in time returned by the last search is released."""
        es = _wire(mock_elasticsearch, event_count=1_000, indicator_count=1)

        await engine_factory(es).execute(rule_params, time_window)

        es.open_point_in_time.assert_awaited_once()
        es.close_point_in_time.assert_awaited_once_with(id="pit-2")

    @pytest.mark.asyncio
    async def test_pit_closed_on_failure(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test the point in time is released when the run fails."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)
        es.search = AsyncMock(side_effect=RuntimeError("cluster unavailable"))

        with pytest.raises(RuntimeError):
            await engine_factory(es).execute(rule_params, time_window)

        es.close_point_in_time.assert_awaited_once_with(id="pit-1")

    @pytest.mark.asyncio
    async def test_probe_failure_is_fatal(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test a failed count aborts before any point in time is opened."""
        mock_elasticsearch.count = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(CardinalityProbeError):
            await engine_factory(mock_elasticsearch).execute(rule_params, time_window)

        mock_elasticsearch.open_point_in_time.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_interval(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test an unparseable interval stops the run before any search."""
        params = rule_params.model_copy(update={"interval": "whenever"})

        with pytest.raises(InvalidRuleIntervalError):
            await engine_factory(mock_elasticsearch).execute(params, time_window)

        mock_elasticsearch.count.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_licensed_suppression_scans_ascending(
        self, mock_elasticsearch, engine_factory, suppressed_rule_params, time_window
    ):
        """Test active suppression pages events oldest first."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)

        result = await engine_factory(es).execute(
            suppressed_rule_params, time_window, license_tier=LicenseTier.PLATINUM
        )

        first_search = es.search.call_args_list[0].kwargs
        assert first_search["sort"][0]["@timestamp"]["order"] == "asc"
        assert result.created_signals[0]["alert"]["suppression"]["docs_count"] == 0

    @pytest.mark.asyncio
    async def test_unlicensed_suppression_scans_descending(
        self, mock_elasticsearch, engine_factory, suppressed_rule_params, time_window
    ):
        """Test suppression below the required license is ignored."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)

        result = await engine_factory(es).execute(
            suppressed_rule_params, time_window, license_tier="gold"
        )

        first_search = es.search.call_args_list[0].kwargs
        assert first_search["sort"][0]["@timestamp"]["order"] == "desc"
        assert "suppression" not in result.created_signals[0]["alert"]

    @pytest.mark.asyncio
    async def test_rule_limits_override_settings(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test rule paging parameters replace the configured defaults."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)
        params = rule_params.model_copy(update={"items_per_search": 50, "concurrent_searches": 2})

        await engine_factory(es).execute(params, time_window)

        assert es.search.call_args_list[0].kwargs["size"] == 100

    @pytest.mark.asyncio
    async def test_tiebreaker_sorts_event_pages(
        self, mock_elasticsearch, engine_factory, rule_params, time_window
    ):
        """Test event pages and event lookups sort on the tiebreaker too."""
        es = _wire(mock_elasticsearch, event_count=2, indicator_count=1_000)
        params = rule_params.model_copy(update={"tiebreaker_field": "event.id"})

        await engine_factory(es).execute(params, time_window)

        event_searches = [c.kwargs for c in es.search.call_args_list if "pit" not in c.kwargs]
        assert event_searches
        for search in event_searches:
            assert search["sort"][1] == {"event.id": {"order": "desc", "unmapped_type": "keyword"}}


class TestRunIndicatorMatchRule:
    """Tests for the scheduler entry point."""

    @pytest.mark.asyncio
    async def test_runs_engine_and_closes_telemetry(self, mock_elasticsearch, time_window):
        """Test a raw rule is validated, executed and telemetry closed."""
        @asynccontextmanager
        async def fake_context():
            yield mock_elasticsearch

        engine = MagicMock()
        engine.execute = AsyncMock(return_value=CrossMatchResult(created_signals_count=3))
        telemetry = MagicMock()
        telemetry.close = AsyncMock()
        rule = {
            "rule_id": "rule-1",
            "index": ["logs-*"],
            "threat_index": ["logs-ti_*"],
            "threat_mapping": [{"entries": [{"field": "source.ip", "value": "threat.indicator.ip"}]}],
        }

        with (
            patch.object(main, "elasticsearch_context", fake_context),
            patch.object(main, "IndicatorMatchEngine", return_value=engine),
            patch.object(main, "build_telemetry_sink", return_value=telemetry),
        ):
            result = await main.run_indicator_match_rule(rule, time_window.start, time_window.end)

        assert result.created_signals_count == 3
        params, window = engine.execute.call_args.args
        assert params.rule_id == "rule-1"
        assert window == time_window
        telemetry.close.assert_awaited_once()


class TestGetIndicatorMatchEngine:
    """Tests for the shared engine instance."""

    @pytest.mark.asyncio
    async def test_returns_singleton(self, mock_elasticsearch, test_settings):
        """Test the engine is created once and reused."""
        from threatmatch.services import indicator_match_engine as module

        with (
            patch.object(module, "_indicator_match_engine", None),
            patch.object(module, "get_elasticsearch", AsyncMock(return_value=mock_elasticsearch)),
        ):
            first = await module.get_indicator_match_engine(settings=test_settings)
            second = await module.get_indicator_match_engine()

        assert first is second
        assert first.es is mock_elasticsearch
        assert first.alert_writer.index == test_settings.alerts_index
