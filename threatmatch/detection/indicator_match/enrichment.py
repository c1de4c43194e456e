"""Lookup of matching indicators for a batch of events.

The same lookup serves two purposes: it is the cross-query when events
drive the scan, and it supplies ``threat.enrichments`` for alerts in both
directions.
"""

import copy
import logging
from collections import defaultdict
from typing import Any

from threatmatch.detection.indicator_match.pit import PitLifecycleManager
from threatmatch.detection.indicator_match.queries import (
    build_indicator_sort,
    build_threat_mapping_filter,
    decode_named_query,
    get_field_values,
    get_nested,
)
from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.detection.indicator_match.types import DrivingList, ThreatMatch
from threatmatch.schemas.indicator_match import ThreatMappingGroup

logger = logging.getLogger(__name__)

ENRICHMENT_TYPE = "indicator_match_rule"

SignalsMap = dict[str, list[ThreatMatch]]


async def get_signals_map_from_threat_index(
    *,
    store: DocumentStore,
    pit: PitLifecycleManager,
    threat_mapping: list[ThreatMappingGroup],
    indicator_query: dict[str, Any],
    events: list[dict[str, Any]],
    indicator_path: str,
    per_page: int,
) -> SignalsMap:
    """Map each event id to the indicators matching it.

    Pages through the indicator point in time with a query built from
    ``events``, reading ``matched_queries`` to attribute each indicator hit
    to the events it matched.

    Raises:
        QueryTooComplexError: the query built from ``events`` was too large
    """
    threat_filter = build_threat_mapping_filter(threat_mapping, events, DrivingList.EVENTS)
    if threat_filter is None:
        return {}

    query = {"bool": {"filter": [indicator_query, threat_filter]}}
    signals_map: SignalsMap = defaultdict(list)
    search_after: list[Any] | None = None

    while True:
        response = await store.search(
            pit=pit.search_param(),
            query=query,
            sort=build_indicator_sort(),
            size=per_page,
            search_after=search_after,
            source=[f"{indicator_path}.*", "threat.feed.*"],
        )
        pit.reassign(response.get("pit_id"))

        hits = response.get("hits", {}).get("hits", [])
        for hit in hits:
            source = hit.get("_source") or {}
            for name in hit.get("matched_queries", []):
                decoded = decode_named_query(name)
                if decoded is None:
                    continue
                signals_map[decoded["id"]].append(
                    ThreatMatch(
                        event_id=decoded["id"],
                        indicator_id=hit["_id"],
                        indicator_index=hit.get("_index", ""),
                        group=decoded["group"],
                        indicator=get_nested(source, indicator_path) or {},
                        feed=get_nested(source, "threat.feed") or {},
                    )
                )

        if len(hits) < per_page:
            break
        search_after = hits[-1].get("sort")
        if not search_after:
            break

    logger.debug("%d events matched indicators", len(signals_map))
    return dict(signals_map)


def _build_enrichments(
    event: dict[str, Any],
    matches: list[ThreatMatch],
    threat_mapping: list[ThreatMappingGroup],
) -> list[dict[str, Any]]:
    enrichments = []
    seen: set[tuple[str, str, str]] = set()
    for match in matches:
        group = threat_mapping[match.group]
        for entry in group.entries:
            key = (match.indicator_index, match.indicator_id, entry.field)
            if key in seen:
                continue
            seen.add(key)
            values = get_field_values(event, entry.field)
            enrichments.append(
                {
                    "indicator": match.indicator,
                    "feed": match.feed,
                    "matched": {
                        "id": match.indicator_id,
                        "index": match.indicator_index,
                        "field": entry.field,
                        "atomic": values[0] if values else None,
                        "type": ENRICHMENT_TYPE,
                    },
                }
            )
    return enrichments


def enrich_events(
    events: list[dict[str, Any]],
    signals_map: SignalsMap,
    threat_mapping: list[ThreatMappingGroup],
) -> list[dict[str, Any]]:
    """Return copies of the matched events carrying ``threat.enrichments``.

    Events without an entry in ``signals_map`` are left out.
    """
    enriched = []
    for event in events:
        matches = signals_map.get(event["_id"])
        if not matches:
            continue
        hit = copy.deepcopy(event)
        source = hit.setdefault("_source", {})
        threat = source.setdefault("threat", {})
        existing = threat.get("enrichments") or []
        threat["enrichments"] = [*existing, *_build_enrichments(event, matches, threat_mapping)]
        enriched.append(hit)
    return enriched
