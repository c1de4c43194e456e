"""Alert generator service for building alert documents from enriched events.

This service handles:
- Alert document construction from indicator matches
- Deterministic alert ids, so re-processing a page never duplicates alerts
- Group-by suppression of alerts sharing the same field values
- Entity extraction for analyst pivots
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid5

from threatmatch.detection.indicator_match.interval import parse_duration
from threatmatch.detection.indicator_match.queries import get_field_values, get_nested
from threatmatch.schemas.indicator_match import IndicatorMatchRuleParams, MissingFieldsStrategy

logger = logging.getLogger(__name__)

# Namespace UUIDs for deterministic alert and suppression instance ids
_NS_ALERT = UUID("0c4f1f8e-6c1e-4d4c-9f0b-5a3c2e7d9b11")
_NS_SUPPRESSION = UUID("7e2b9d3a-1f4c-4a8e-b6d5-c9e0f1a2b3c4")

RULE_TYPE = "threat_match"

SuppressionKey = tuple[tuple[str, tuple[Any, ...]], ...]


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    INFORMATIONAL = "informational"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stable_name(*parts: Any) -> str:
    return json.dumps(parts, sort_keys=True, default=str)


def _epoch_seconds(value: Any) -> float | None:
    """Seconds since the epoch of an ISO string or epoch millis value."""
    if isinstance(value, (int, float)):
        return value / 1000
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


class AlertGenerator:
    """Alert generation service.

    Provides the ``wrap_hits`` and ``wrap_suppressed_hits`` callables used
    by the chunk workers.
    """

    def __init__(
        self,
        params: IndicatorMatchRuleParams,
        clock: Callable[[], datetime] = _utcnow,
        window_start: datetime | None = None,
    ):
        """Initialize alert generator.

        Args:
            params: Rule the alerts belong to
            clock: Source of alert timestamps
            window_start: Start of the execution window, the suppression
                window of rules without a suppression duration
        """
        self.params = params
        self.clock = clock
        self.window_start = window_start

    def alert_id(self, hit: dict[str, Any]) -> str:
        """Stable id of the alert for one source event."""
        return str(uuid5(_NS_ALERT, _stable_name(self.params.rule_id, hit.get("_index", ""), hit["_id"])))

    def build_alert(self, hit: dict[str, Any]) -> dict[str, Any]:
        """Build one alert document from an enriched event hit."""
        source = hit.get("_source") or {}
        enrichments = get_nested(source, "threat.enrichments") or []
        now = self.clock().isoformat()

        return {
            "_id": self.alert_id(hit),
            "@timestamp": now,
            "event": source,
            "alert": {
                "uuid": self.alert_id(hit),
                "status": "open",
                "severity": self._map_severity(self.params.severity).value,
                "risk_score": self.params.risk_score,
                "reason": self._build_reason(hit, len(enrichments)),
                "original_time": source.get(self.params.primary_timestamp),
                "ancestors": [{"id": hit["_id"], "index": hit.get("_index", "")}],
                "rule": {
                    "id": self.params.rule_id,
                    "name": self.params.name,
                    "type": RULE_TYPE,
                },
            },
            "entities": self._extract_entities(source),
        }

    def wrap_hits(self, hits: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Build one alert per event hit."""
        return [self.build_alert(hit) for hit in hits]

    def wrap_suppressed_hits(
        self, hits: list[dict[str, Any]]
    ) -> tuple[list[dict[str, Any]], int]:
        """Collapse hits sharing the group-by values into one alert each.

        Hits are expected in ascending timestamp order, so the first hit of
        a group opens the suppression window. A group alert's id is derived
        from the group values and the window, so later hits of the same
        window collide with it in the alerts index.

        Returns:
            Tuple of (alerts to write, number of hits suppressed)
        """
        suppression = self.params.alert_suppression
        if suppression is None or not suppression.group_by:
            return self.wrap_hits(hits), 0

        groups: dict[tuple[SuppressionKey, Any], list[dict[str, Any]]] = {}
        standalone: list[dict[str, Any]] = []

        for hit in hits:
            key = self._suppression_key(hit, suppression.group_by)
            missing = any(not values for _, values in key)
            if missing and suppression.missing_fields_strategy == MissingFieldsStrategy.DO_NOT_SUPPRESS:
                standalone.append(hit)
                continue
            groups.setdefault((key, self._suppression_window(hit)), []).append(hit)

        alerts = [self.build_alert(hit) for hit in standalone]
        suppressed = 0
        for (key, window), members in groups.items():
            alert = self.build_alert(members[0])
            alert["_id"] = str(
                uuid5(_NS_SUPPRESSION, _stable_name(self.params.rule_id, key, window))
            )
            alert["alert"]["uuid"] = alert["_id"]
            alert["alert"]["instance_id"] = alert["_id"]
            alert["alert"]["suppression"] = {
                "terms": [{"field": field, "value": list(values)} for field, values in key],
                "start": self._timestamp_of(members[0]),
                "end": self._timestamp_of(members[-1]),
                "docs_count": len(members) - 1,
            }
            alerts.append(alert)
            suppressed += len(members) - 1

        logger.debug(
            "Suppression collapsed %d hits into %d alerts",
            len(hits),
            len(alerts),
        )
        return alerts, suppressed

    def _suppression_key(self, hit: dict[str, Any], group_by: list[str]) -> SuppressionKey:
        return tuple(
            (field, tuple(sorted(get_field_values(hit, field), key=str)))
            for field in group_by
        )

    def _suppression_window(self, hit: dict[str, Any]) -> Any:
        """Fixed window of the suppression duration the hit falls in.

        Without a duration the window is the rule execution.
        """
        duration = self.params.alert_suppression.duration
        seconds = _epoch_seconds(self._timestamp_of(hit))
        if duration and seconds is not None:
            return int(seconds // parse_duration(duration).total_seconds())
        return self.window_start.isoformat() if self.window_start else None

    def _timestamp_of(self, hit: dict[str, Any]) -> Any:
        values = get_field_values(hit, self.params.primary_timestamp)
        return values[0] if values else None

    def _build_reason(self, hit: dict[str, Any], match_count: int) -> str:
        host = get_field_values(hit, "host.name")
        user = get_field_values(hit, "user.name")
        reason = f"event matched {match_count} threat indicator(s)"
        if host:
            reason += f" on {host[0]}"
        if user:
            reason += f" by {user[0]}"
        return f"{reason}, created {self.params.name or self.params.rule_id} alert."

    def _map_severity(self, rule_severity: str) -> AlertSeverity:
        """Map rule severity to alert severity.

        Args:
            rule_severity: Severity string from the rule

        Returns:
            Corresponding AlertSeverity
        """
        try:
            return AlertSeverity(str(rule_severity).lower())
        except ValueError:
            return AlertSeverity.MEDIUM

    def _extract_entities(self, source: dict[str, Any]) -> dict[str, list[str]]:
        """Extract unique entities from an event.

        Args:
            source: Event document

        Returns:
            Dictionary of entity types to unique values
        """
        entities: dict[str, set[str]] = {
            "hosts": set(),
            "users": set(),
            "ips": set(),
            "hashes": set(),
            "files": set(),
        }

        host = get_nested(source, "host.name")
        if isinstance(host, str):
            entities["hosts"].add(host)

        user = get_nested(source, "user.name")
        if isinstance(user, str):
            entities["users"].add(user)

        for ip_field in ["source.ip", "destination.ip", "host.ip"]:
            value = get_nested(source, ip_field)
            if isinstance(value, str):
                entities["ips"].add(value)

        for hash_type in ["sha256", "sha1", "md5"]:
            value = get_nested(source, f"file.hash.{hash_type}")
            if isinstance(value, str):
                entities["hashes"].add(value)

        for file_field in ["file.path", "process.executable"]:
            value = get_nested(source, file_field)
            if isinstance(value, str):
                entities["files"].add(value)

        return {k: sorted(v) for k, v in entities.items() if v}
