"""Indicator match engine service.

This service handles one indicator match rule execution:
- Counting events and indicators to pick the driving list
- Opening and closing the indicator point in time
- Running the chunked cross-match loop
- Returning the aggregated result for the execution log

Example usage:
```python
engine = IndicatorMatchEngine(es_client)
result = await engine.execute(params, window, license_tier=LicenseTier.PLATINUM)
```
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from elasticsearch import AsyncElasticsearch

from threatmatch.config import Settings, get_settings
from threatmatch.database import get_elasticsearch
from threatmatch.detection.indicator_match.interval import build_execution_interval_validator
from threatmatch.detection.indicator_match.matcher import ChunkedCrossMatcher
from threatmatch.detection.indicator_match.ordering import (
    LicenseTier,
    decide_sort_order,
    is_suppression_active,
)
from threatmatch.detection.indicator_match.overflow import get_matched_field_count
from threatmatch.detection.indicator_match.pagers import (
    DocumentPager,
    EventPager,
    IndicatorPager,
)
from threatmatch.detection.indicator_match.pit import PitLifecycleManager
from threatmatch.detection.indicator_match.probe import CardinalityProbe, choose_driving_list
from threatmatch.detection.indicator_match.queries import (
    build_event_query,
    build_indicator_query,
    build_indicator_sort,
)
from threatmatch.detection.indicator_match.signals import (
    SignalContext,
    create_event_signal,
    create_threat_signal,
)
from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.detection.indicator_match.termination import TerminationPolicy
from threatmatch.detection.indicator_match.types import (
    CreateSignal,
    CrossMatchResult,
    DrivingList,
    SortOrder,
    WrapHits,
    WrapSuppressedHits,
)
from threatmatch.schemas.indicator_match import IndicatorMatchRuleParams, TimeWindow
from threatmatch.services.alert_generator import AlertGenerator
from threatmatch.services.alert_writer import AlertWriter
from threatmatch.services.telemetry import NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass
class MatchStrategy:
    """The driving pager and the chunk worker paired with it."""

    driving: DrivingList
    pager: DocumentPager
    create_signal: CreateSignal
    total_document_count: int


class IndicatorMatchEngine:
    """Executes indicator match rules against Elasticsearch."""

    def __init__(
        self,
        es: AsyncElasticsearch,
        settings: Settings | None = None,
        telemetry: TelemetrySink | None = None,
        alert_writer: AlertWriter | None = None,
    ):
        """Initialize indicator match engine.

        Args:
            es: Elasticsearch client
            settings: Defaults and limits (global settings when omitted)
            telemetry: Sink for page size reduction events
            alert_writer: Alert persistence (alerts index from settings when omitted)
        """
        self.es = es
        self.settings = settings or get_settings()
        self.store = DocumentStore(es)
        self.telemetry = telemetry or NullTelemetrySink()
        self.alert_writer = alert_writer or AlertWriter(es, self.settings.alerts_index)

    async def execute(
        self,
        params: IndicatorMatchRuleParams,
        window: TimeWindow,
        license_tier: LicenseTier | str = LicenseTier.BASIC,
        wrap_hits: WrapHits | None = None,
        wrap_suppressed_hits: WrapSuppressedHits | None = None,
    ) -> CrossMatchResult:
        """Run one indicator match rule execution.

        Args:
            params: Rule parameters
            window: Time range of events to scan
            license_tier: Active license, gating alert suppression
            wrap_hits: Builds alerts from enriched events
            wrap_suppressed_hits: Builds suppressed alerts and counts collapsed events

        Returns:
            Aggregated result with created alerts, warnings and errors

        Raises:
            CardinalityProbeError: an initial count failed
            ExecutionIntervalExceededError: the run outlived its interval
            PointInTimeError: the indicator point in time could not be opened
        """
        logger.debug("Indicator matching rule %s starting", params.rule_id)

        verify_execution_can_proceed = build_execution_interval_validator(params.interval)
        items_per_search = params.items_per_search or self.settings.default_items_per_search
        concurrent_searches = (
            params.concurrent_searches or self.settings.default_concurrent_searches
        )
        max_signals = params.max_signals or self.settings.default_max_signals
        per_page = concurrent_searches * items_per_search
        indicator_path = params.threat_indicator_path or self.settings.threat_indicator_path

        suppression_licensed = LicenseTier(license_tier).has_at_least(
            self.settings.suppression_license_tier
        )
        suppression_active = is_suppression_active(
            params.is_suppression_configured, suppression_licensed
        )
        sort_order = decide_sort_order(params.is_suppression_configured, suppression_licensed)

        generator = AlertGenerator(params, window_start=window.start)
        event_query = build_event_query(params, window)
        indicator_query = build_indicator_query(params)

        event_count, indicator_count = await CardinalityProbe(self.store).probe(
            params.index, event_query, params.threat_index, indicator_query
        )

        pit = PitLifecycleManager(
            self.store, params.threat_index, self.settings.threat_pit_keep_alive
        )
        await pit.open()
        try:
            ctx = SignalContext(
                store=self.store,
                pit=pit,
                params=params,
                event_query=event_query,
                indicator_query=indicator_query,
                sort_order=sort_order,
                suppression_active=suppression_active,
                wrap_hits=wrap_hits or generator.wrap_hits,
                wrap_suppressed_hits=wrap_suppressed_hits or generator.wrap_suppressed_hits,
                alert_writer=self.alert_writer,
                max_signals=max_signals,
                indicator_path=indicator_path,
                per_page=per_page,
            )
            strategy = self._select_strategy(
                ctx, event_count, indicator_count, per_page
            )
            logger.debug(
                "Rule %s: %s drive the scan (%d events, %d indicators)",
                params.rule_id,
                strategy.driving.value,
                event_count,
                indicator_count,
            )

            matcher = ChunkedCrossMatcher(
                rule_id=params.rule_id,
                pager=strategy.pager,
                create_signal=strategy.create_signal,
                total_document_count=strategy.total_document_count,
                items_per_search=items_per_search,
                matched_field_count=get_matched_field_count(params.threat_mapping),
                termination=TerminationPolicy(
                    max_signals=max_signals,
                    suppression_active=suppression_active,
                    suppression_multiplier=self.settings.max_signals_suppression_multiplier,
                    descending=strategy.pager.sort_order == SortOrder.DESC,
                ),
                verify_execution_can_proceed=verify_execution_can_proceed,
                telemetry=self.telemetry,
                provisional=ctx.provisional,
            )
            results = await matcher.run()
        finally:
            await pit.close()

        logger.debug(
            "Indicator matching rule %s has completed (%s)",
            params.rule_id,
            matcher.stop_reason.value if matcher.stop_reason else "unknown",
        )
        return results

    def _select_strategy(
        self,
        ctx: SignalContext,
        event_count: int,
        indicator_count: int,
        per_page: int,
    ) -> MatchStrategy:
        """Pair the smaller list's pager with the matching chunk worker."""
        driving = choose_driving_list(event_count, indicator_count)
        params = ctx.params

        if driving == DrivingList.EVENTS:
            pager: DocumentPager = EventPager(
                self.store,
                index=params.index,
                query=ctx.event_query,
                sort=ctx.event_sort,
                per_page=per_page,
                fields=params.event_fields(),
                order=ctx.sort_order,
            )
            return MatchStrategy(
                driving=driving,
                pager=pager,
                create_signal=partial(create_event_signal, ctx),
                total_document_count=event_count,
            )

        pager = IndicatorPager(
            self.store,
            pit=ctx.pit,
            query=ctx.indicator_query,
            sort=build_indicator_sort(),
            per_page=per_page,
            fields=params.indicator_fields(),
        )
        return MatchStrategy(
            driving=driving,
            pager=pager,
            create_signal=partial(create_threat_signal, ctx),
            total_document_count=indicator_count,
        )


# Global indicator match engine instance
_indicator_match_engine: IndicatorMatchEngine | None = None


async def get_indicator_match_engine(**kwargs: Any) -> IndicatorMatchEngine:
    """Get the indicator match engine instance.

    Returns:
        Configured indicator match engine
    """
    global _indicator_match_engine
    if _indicator_match_engine is None:
        es = await get_elasticsearch()
        _indicator_match_engine = IndicatorMatchEngine(es, **kwargs)
    return _indicator_match_engine
