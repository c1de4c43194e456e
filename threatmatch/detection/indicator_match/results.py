"""Reduction of per-chunk cross-match results into a running total."""

from collections.abc import Iterable
from typing import Any

from threatmatch.detection.indicator_match.types import CrossMatchResult


def _dedupe(messages: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(messages))


def merge(accumulator: CrossMatchResult, batch: CrossMatchResult) -> CrossMatchResult:
    """Combine two results into a new one without touching either input.

    Counts are summed and lists concatenated. Complexity overflows are
    dropped: they are reported once per page-size reduction as a warning,
    never as per-chunk errors.
    """
    return CrossMatchResult(
        success=accumulator.success and batch.success,
        warning=accumulator.warning or batch.warning,
        created_signals_count=accumulator.created_signals_count + batch.created_signals_count,
        suppressed_alerts_count=(
            accumulator.suppressed_alerts_count + batch.suppressed_alerts_count
        ),
        errors=_dedupe([*accumulator.errors, *batch.errors]),
        warning_messages=[*accumulator.warning_messages, *batch.warning_messages],
        search_after_times=[*accumulator.search_after_times, *batch.search_after_times],
        bulk_create_times=[*accumulator.bulk_create_times, *batch.bulk_create_times],
        enrichment_times=[*accumulator.enrichment_times, *batch.enrichment_times],
        created_signals=[*accumulator.created_signals, *batch.created_signals],
    )


def combine_concurrent_results(
    current: CrossMatchResult,
    batch_results: Iterable[CrossMatchResult],
) -> CrossMatchResult:
    """Fold the settled chunk results of one page into the running total."""
    combined = current
    for result in batch_results:
        combined = merge(combined, result)
    return combined


def has_complexity_overflow(batch_results: Iterable[CrossMatchResult]) -> bool:
    return any(result.complexity_overflows for result in batch_results)


def overflows_as_errors(result: CrossMatchResult) -> CrossMatchResult:
    """Turn a chunk's overflows into ordinary errors.

    Used when the chunk size cannot shrink any further, so the overflow is
    no longer recoverable.
    """
    converted = merge(CrossMatchResult(), result)
    for overflow in result.complexity_overflows:
        converted.add_error(overflow.message)
    return converted


def _suppressed_docs(alert: dict[str, Any]) -> int:
    suppression = (alert.get("alert") or {}).get("suppression")
    return suppression.get("docs_count", 0) if suppression else 0


class ProvisionalAlerts:
    """Alerts persisted by page attempts whose results were discarded.

    A page that overflows is fetched again with smaller chunks, but sibling
    chunks of the failed attempt may already have written their alerts.
    The retry builds the same deterministic ids and the store answers with
    conflicts; claiming the held alert on conflict counts it exactly once.
    """

    def __init__(self):
        self._held: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._held)

    def hold(self, batch_results: Iterable[CrossMatchResult]) -> None:
        """Keep the created alerts of a discarded attempt."""
        for result in batch_results:
            for alert in result.created_signals:
                self._held.setdefault(alert["_id"], alert)

    def claim(self, alert_id: str) -> dict[str, Any] | None:
        return self._held.pop(alert_id, None)

    def release(self) -> CrossMatchResult:
        """Account for held alerts no retry claimed, and forget them."""
        alerts = list(self._held.values())
        self._held.clear()
        return CrossMatchResult(
            created_signals_count=len(alerts),
            suppressed_alerts_count=sum(_suppressed_docs(a) for a in alerts),
            created_signals=alerts,
        )


def record_bulk_create(
    result: CrossMatchResult,
    bulk: Any,
    provisional: ProvisionalAlerts,
) -> None:
    """Fold one bulk write into a chunk result.

    Conflicting alerts are counted as created when a discarded attempt of
    this run wrote them. Any other conflict on a group alert means the
    group's window is already open, so the hit that would have opened it is
    suppressed as well. Remaining conflicts are duplicates and count for
    nothing.
    """
    result.bulk_create_times.append(bulk.took_ms)
    result.created_signals_count += bulk.created_count
    result.created_signals.extend(bulk.created_items)

    for alert in bulk.existing_items:
        held = provisional.claim(alert["_id"])
        if held is not None:
            result.created_signals_count += 1
            result.created_signals.append(held)
        elif (alert.get("alert") or {}).get("suppression"):
            result.suppressed_alerts_count += 1

    for error in bulk.errors:
        result.add_error(error)
