"""Chunk workers: one cross-query per chunk of the driving list.

Each worker returns a CrossMatchResult and never raises. Clause-count
rejections are reported in ``complexity_overflows`` so the coordinator
can shrink the chunk size; every other failure becomes an error string.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from threatmatch.detection.indicator_match.enrichment import (
    enrich_events,
    get_signals_map_from_threat_index,
)
from threatmatch.detection.indicator_match.pit import PitLifecycleManager
from threatmatch.detection.indicator_match.queries import (
    build_event_sort,
    build_threat_mapping_filter,
)
from threatmatch.detection.indicator_match.results import ProvisionalAlerts, record_bulk_create
from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.detection.indicator_match.termination import has_negative_date_sort
from threatmatch.detection.indicator_match.types import (
    CrossMatchResult,
    DrivingList,
    SortOrder,
    WrapHits,
    WrapSuppressedHits,
)
from threatmatch.exceptions import QueryTooComplexError
from threatmatch.schemas.indicator_match import IndicatorMatchRuleParams

logger = logging.getLogger(__name__)


class BulkWriter(Protocol):
    async def bulk_create(self, alerts: list[dict[str, Any]]) -> Any: ...


@dataclass
class SignalContext:
    """Everything a chunk worker needs for one rule run."""

    store: DocumentStore
    pit: PitLifecycleManager
    params: IndicatorMatchRuleParams
    event_query: dict[str, Any]
    indicator_query: dict[str, Any]
    sort_order: SortOrder
    suppression_active: bool
    wrap_hits: WrapHits
    wrap_suppressed_hits: WrapSuppressedHits
    alert_writer: BulkWriter
    max_signals: int
    indicator_path: str
    per_page: int
    provisional: ProvisionalAlerts = field(default_factory=ProvisionalAlerts)

    @property
    def event_sort(self) -> list[dict[str, Any]]:
        return build_event_sort(
            self.params.primary_timestamp, self.sort_order, self.params.tiebreaker_field
        )


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


async def _lookup_matches(ctx: SignalContext, events: list[dict[str, Any]]):
    return await get_signals_map_from_threat_index(
        store=ctx.store,
        pit=ctx.pit,
        threat_mapping=ctx.params.threat_mapping,
        indicator_query=ctx.indicator_query,
        events=events,
        indicator_path=ctx.indicator_path,
        per_page=ctx.per_page,
    )


async def _bulk_create(
    ctx: SignalContext,
    enriched: list[dict[str, Any]],
    result: CrossMatchResult,
) -> None:
    if not enriched:
        return

    if ctx.suppression_active:
        alerts, suppressed = ctx.wrap_suppressed_hits(enriched)
        result.suppressed_alerts_count += suppressed
    else:
        alerts = ctx.wrap_hits(enriched)

    remaining = ctx.max_signals - result.created_signals_count
    if len(alerts) > remaining:
        alerts = alerts[: max(remaining, 0)]
        result.warning = True

    bulk = await ctx.alert_writer.bulk_create(alerts)
    record_bulk_create(result, bulk, ctx.provisional)


async def create_event_signal(
    ctx: SignalContext,
    current_event_list: list[dict[str, Any]],
) -> CrossMatchResult:
    """Match a chunk of events against the whole indicator list."""
    result = CrossMatchResult()
    try:
        start = time.perf_counter()
        signals_map = await _lookup_matches(ctx, current_event_list)
        result.search_after_times.append(_elapsed_ms(start))
        if not signals_map:
            return result

        ids = list(signals_map)
        start = time.perf_counter()
        response = await ctx.store.search(
            index=ctx.params.index,
            query={"bool": {"filter": [ctx.event_query, {"ids": {"values": ids}}]}},
            sort=ctx.event_sort,
            size=len(ids),
            source=True,
        )
        result.search_after_times.append(_elapsed_ms(start))
        hits = response.get("hits", {}).get("hits", [])

        start = time.perf_counter()
        enriched = enrich_events(hits, signals_map, ctx.params.threat_mapping)
        result.enrichment_times.append(_elapsed_ms(start))

        await _bulk_create(ctx, enriched, result)
    except QueryTooComplexError as e:
        result.complexity_overflows.append(e)
    except Exception as e:
        logger.error("Event chunk search failed for rule %s: %s", ctx.params.rule_id, str(e))
        result.add_error(str(e))

    logger.debug(
        "Event chunk of %d produced %d alerts",
        len(current_event_list),
        result.created_signals_count,
    )
    return result


async def create_threat_signal(
    ctx: SignalContext,
    current_threat_list: list[dict[str, Any]],
) -> CrossMatchResult:
    """Match a chunk of indicators against the events of the window."""
    result = CrossMatchResult()
    try:
        threat_filter = build_threat_mapping_filter(
            ctx.params.threat_mapping, current_threat_list, DrivingList.INDICATORS
        )
        if threat_filter is None:
            return result

        query = {"bool": {"filter": [ctx.event_query, threat_filter]}}
        page_size = ctx.max_signals
        search_after: list[Any] | None = None

        while result.created_signals_count < ctx.max_signals:
            start = time.perf_counter()
            response = await ctx.store.search(
                index=ctx.params.index,
                query=query,
                sort=ctx.event_sort,
                size=page_size,
                search_after=search_after,
                source=True,
            )
            result.search_after_times.append(_elapsed_ms(start))
            hits = response.get("hits", {}).get("hits", [])
            if not hits:
                break

            start = time.perf_counter()
            signals_map = await _lookup_matches(ctx, hits)
            enriched = enrich_events(hits, signals_map, ctx.params.threat_mapping)
            result.enrichment_times.append(_elapsed_ms(start))

            await _bulk_create(ctx, enriched, result)

            if len(hits) < page_size:
                break
            search_after = hits[-1].get("sort")
            if not search_after:
                break
            if ctx.sort_order == SortOrder.DESC and has_negative_date_sort(search_after):
                break
    except QueryTooComplexError as e:
        result.complexity_overflows.append(e)
    except Exception as e:
        logger.error("Indicator chunk search failed for rule %s: %s", ctx.params.rule_id, str(e))
        result.add_error(str(e))

    logger.debug(
        "Indicator chunk of %d produced %d alerts",
        len(current_threat_list),
        result.created_signals_count,
    )
    return result
