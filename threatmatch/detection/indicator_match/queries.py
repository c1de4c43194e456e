"""Elasticsearch query construction for indicator matching.

Cross-queries name one ``bool`` clause per (document, mapping group). The
name is a small JSON object identifying the source document and group, so
``matched_queries`` on a hit tells which document of the chunk it matched.
"""

import json
from datetime import datetime
from typing import Any

from threatmatch.detection.indicator_match.types import DrivingList, SortOrder
from threatmatch.schemas.indicator_match import (
    IndicatorMatchRuleParams,
    ThreatMappingGroup,
    TimeWindow,
)

MATCH_ALL: dict[str, Any] = {"match_all": {}}


# =============================================================================
# Field Access
# =============================================================================


def get_nested(source: dict[str, Any], path: str) -> Any:
    value: Any = source
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def get_field_values(hit: dict[str, Any], path: str) -> list[Any]:
    """Read a field from a hit's ``fields`` projection, falling back to ``_source``."""
    fields = hit.get("fields")
    if fields and path in fields:
        values = fields[path]
        return [v for v in values if v is not None] if isinstance(values, list) else [values]

    value = get_nested(hit.get("_source") or {}, path)
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# =============================================================================
# Named Queries
# =============================================================================


def encode_named_query(doc_id: str, index: str, group: int) -> str:
    return json.dumps({"id": doc_id, "index": index, "group": group}, sort_keys=True)


def decode_named_query(name: str) -> dict[str, Any] | None:
    """Inverse of encode_named_query; None for names this module did not produce."""
    try:
        decoded = json.loads(name)
    except (TypeError, ValueError):
        return None
    if not isinstance(decoded, dict) or not {"id", "index", "group"} <= decoded.keys():
        return None
    return decoded


# =============================================================================
# Filters
# =============================================================================


def _side_fields(group: ThreatMappingGroup, side: DrivingList) -> list[str]:
    if side == DrivingList.EVENTS:
        return [entry.field for entry in group.entries]
    return [entry.value for entry in group.entries]


def build_mapping_filter(
    threat_mapping: list[ThreatMappingGroup],
    side: DrivingList,
) -> dict[str, Any]:
    """Require every field of at least one mapping group to exist on ``side``."""
    return {
        "bool": {
            "should": [
                {
                    "bool": {
                        "filter": [
                            {"exists": {"field": field}}
                            for field in _side_fields(group, side)
                        ]
                    }
                }
                for group in threat_mapping
            ],
            "minimum_should_match": 1,
        }
    }


def build_threat_mapping_filter(
    threat_mapping: list[ThreatMappingGroup],
    documents: list[dict[str, Any]],
    documents_side: DrivingList,
) -> dict[str, Any] | None:
    """Build the cross-query matching any document of a chunk on the other list.

    Values are read from ``documents`` on ``documents_side`` and compared
    against the opposite side's fields. Groups with a missing value on a
    document are skipped for that document. Returns None when no document
    produced a clause.
    """
    should: list[dict[str, Any]] = []
    for doc in documents:
        for position, group in enumerate(threat_mapping):
            terms = []
            for entry in group.entries:
                if documents_side == DrivingList.EVENTS:
                    source_field, target_field = entry.field, entry.value
                else:
                    source_field, target_field = entry.value, entry.field
                values = get_field_values(doc, source_field)
                if not values:
                    break
                terms.append({"terms": {target_field: values}})
            else:
                should.append(
                    {
                        "bool": {
                            "filter": terms,
                            "_name": encode_named_query(doc["_id"], doc.get("_index", ""), position),
                        }
                    }
                )

    if not should:
        return None
    return {"bool": {"should": should, "minimum_should_match": 1}}


# =============================================================================
# List Queries
# =============================================================================


def _as_iso(value: datetime) -> str:
    return value.isoformat()


def build_event_query(params: IndicatorMatchRuleParams, window: TimeWindow) -> dict[str, Any]:
    """Event-side query: rule query, time window, mapping and rule filters."""
    query: dict[str, Any] = {
        "bool": {
            "must": [params.query or MATCH_ALL],
            "filter": [
                {
                    "range": {
                        params.primary_timestamp: {
                            "gte": _as_iso(window.start),
                            "lte": _as_iso(window.end),
                            "format": "strict_date_optional_time",
                        }
                    }
                },
                build_mapping_filter(params.threat_mapping, DrivingList.EVENTS),
                *params.filters,
            ],
        }
    }
    if params.exception_filter:
        query["bool"]["must_not"] = [params.exception_filter]
    return query


def build_indicator_query(params: IndicatorMatchRuleParams) -> dict[str, Any]:
    """Indicator-side query: threat query, mapping and threat filters."""
    return {
        "bool": {
            "must": [params.threat_query or MATCH_ALL],
            "filter": [
                build_mapping_filter(params.threat_mapping, DrivingList.INDICATORS),
                *params.threat_filters,
            ],
        }
    }


def build_event_sort(
    timestamp_field: str,
    order: SortOrder,
    tiebreaker_field: str | None = None,
) -> list[dict[str, Any]]:
    """Event sort; search_after without a point in time needs a unique tiebreaker.

    Without ``tiebreaker_field``, events sharing the timestamp of the last
    hit of a page may be skipped on the next page.
    """
    sort: list[dict[str, Any]] = [
        {timestamp_field: {"order": order.value, "unmapped_type": "date"}}
    ]
    if tiebreaker_field:
        sort.append({tiebreaker_field: {"order": order.value, "unmapped_type": "keyword"}})
    return sort


def build_indicator_sort() -> list[dict[str, Any]]:
    return [{"@timestamp": {"order": SortOrder.DESC.value, "unmapped_type": "date"}}]
