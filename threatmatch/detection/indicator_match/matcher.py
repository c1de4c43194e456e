"""The correlation loop over pages of the driving list.

Each page is split into chunks of ``current_page_size`` documents and one
cross-query per chunk runs concurrently. All chunks of a page settle before
the next page is requested. When any chunk reports a clause-count overflow
the chunk size shrinks and the same page is fetched again; nothing from the
overflowing attempt is merged. Alerts that attempt already wrote are held
until the retry claims them, and any left unclaimed are counted once the
retried page is merged.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from threatmatch.detection.indicator_match.overflow import compute_reduced_page_size
from threatmatch.detection.indicator_match.pagers import DocumentPager
from threatmatch.detection.indicator_match.results import (
    ProvisionalAlerts,
    combine_concurrent_results,
    has_complexity_overflow,
    merge,
    overflows_as_errors,
)
from threatmatch.detection.indicator_match.termination import StopReason, TerminationPolicy
from threatmatch.detection.indicator_match.types import CreateSignal, CrossMatchResult
from threatmatch.services.telemetry import (
    DETECTION_ALERTS_CHANNEL,
    NullTelemetrySink,
    TelemetrySink,
)

logger = logging.getLogger(__name__)


def chunk(documents: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    return [documents[i : i + size] for i in range(0, len(documents), size)]


class ChunkedCrossMatcher:
    """Drives one direction of the scan until a stop condition is met."""

    def __init__(
        self,
        *,
        rule_id: str,
        pager: DocumentPager,
        create_signal: CreateSignal,
        total_document_count: int,
        items_per_search: int,
        matched_field_count: int,
        termination: TerminationPolicy,
        verify_execution_can_proceed: Callable[[], None],
        telemetry: TelemetrySink | None = None,
        provisional: ProvisionalAlerts | None = None,
    ):
        self.rule_id = rule_id
        self.pager = pager
        self.create_signal = create_signal
        self.total_document_count = total_document_count
        self.current_page_size = items_per_search
        self.matched_field_count = matched_field_count
        self.termination = termination
        self.verify_execution_can_proceed = verify_execution_can_proceed
        self.telemetry = telemetry or NullTelemetrySink()
        self.provisional = provisional if provisional is not None else ProvisionalAlerts()
        self.stop_reason: StopReason | None = None

    async def _dispatch(self, documents: list[dict[str, Any]]) -> list[CrossMatchResult]:
        chunks = chunk(documents, self.current_page_size)
        logger.debug("%d concurrent indicator searches are starting.", len(chunks))
        settled = await asyncio.gather(
            *(self.create_signal(c) for c in chunks),
            return_exceptions=True,
        )

        results = []
        for outcome in settled:
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failed = CrossMatchResult()
                failed.add_error(str(outcome))
                results.append(failed)
            else:
                results.append(outcome)
        return results

    def _report_reduction(self, page_size: int) -> None:
        self.telemetry.send_async(
            DETECTION_ALERTS_CHANNEL,
            [
                f"indicator match with rule id: {self.rule_id} generated a max clause count "
                f"error, attempting to resolve within executor. Setting IM rule page size "
                f"to {page_size}"
            ],
        )

    async def run(self) -> CrossMatchResult:
        """Run the loop and return the aggregated result."""
        results = CrossMatchResult()
        remaining = self.total_document_count
        page_cursor: list[Any] | None = None
        page = await self.pager.next(page_cursor)

        while not self.termination.is_exhausted(page):
            self.verify_execution_can_proceed()
            batch = await self._dispatch(page.hits)

            if has_complexity_overflow(batch):
                overflows = [o for r in batch for o in r.complexity_overflows]
                reduction = compute_reduced_page_size(
                    overflows, self.matched_field_count, self.current_page_size
                )
                if reduction is not None:
                    self.provisional.hold(batch)
                    self.current_page_size = reduction.page_size
                    self._report_reduction(reduction.page_size)
                    logger.warning(
                        "maxClauseCount error received from elasticsearch, "
                        "setting IM rule page size to %d",
                        reduction.page_size,
                    )
                    results.warning_messages.append(reduction.warning_message)
                    logger.debug("Re-running search since we hit max clause count error")
                    if page_cursor is None:
                        self.pager.reset()
                    page = await self.pager.next(page_cursor)
                    continue
                batch = [overflows_as_errors(r) for r in batch]

            results = combine_concurrent_results(results, batch)
            results = self._settle(results)
            remaining -= len(page)
            logger.debug(
                "Concurrent indicator match searches completed with %d signals found, "
                "search times of %s ms, bulk create times %s ms, all successes are %s",
                results.created_signals_count,
                results.search_after_times,
                results.bulk_create_times,
                results.success,
            )

            self.stop_reason = self.termination.check(results, page, remaining)
            if self.stop_reason is not None:
                return results

            logger.debug("Documents items left to check are %d", remaining)
            if page.search_after is None:
                # Hits without sort values cannot be paged past
                break
            page_cursor = page.search_after
            page = await self.pager.next(page_cursor)

        self.stop_reason = StopReason.EXHAUSTED
        return self._settle(results)

    def _settle(self, results: CrossMatchResult) -> CrossMatchResult:
        if len(self.provisional):
            logger.debug(
                "%d alerts written by discarded attempts were never re-created",
                len(self.provisional),
            )
        return merge(results, self.provisional.release())
