"""Stop conditions evaluated after each completed page."""

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from threatmatch.detection.indicator_match.types import CrossMatchResult, DocumentPage

logger = logging.getLogger(__name__)

MAX_SIGNALS_WARNING = (
    "This rule reached the maximum alert limit for the rule execution. "
    "Some alerts were not created."
)


class StopReason(str, Enum):
    """Why the correlation loop ended."""

    EXHAUSTED = "exhausted"
    MAX_SIGNALS = "max_signals"
    SUPPRESSION_LIMIT = "suppression_limit"
    NEGATIVE_SORT = "negative_sort"


def has_negative_date_sort(sort_values: Sequence[Any] | None) -> bool:
    """True when a cursor holds a negative sort value.

    Elasticsearch returns a negative date sort for documents lacking the
    sort field on a descending sort, and rejects that value as a
    search_after on the next request.
    """
    if not sort_values:
        return False
    for value in sort_values:
        try:
            if float(value) < 0:
                return True
        except (TypeError, ValueError):
            continue
    return False


class TerminationPolicy:
    """Decides after each page whether the run stops."""

    def __init__(
        self,
        max_signals: int,
        suppression_active: bool,
        suppression_multiplier: int,
        descending: bool,
    ):
        self.max_signals = max_signals
        self.suppression_active = suppression_active
        self.suppression_multiplier = suppression_multiplier
        self.descending = descending

    @property
    def suppression_limit(self) -> int:
        return self.suppression_multiplier * self.max_signals

    def is_exhausted(self, page: DocumentPage) -> bool:
        return page.is_empty

    def check(
        self,
        results: CrossMatchResult,
        page: DocumentPage,
        remaining_documents: int,
    ) -> StopReason | None:
        """Return the first applicable stop reason, or None to continue.

        Adds the max signals warning to ``results`` at most once.
        """
        if self.is_exhausted(page):
            return StopReason.EXHAUSTED

        if results.created_signals_count >= self.max_signals:
            if MAX_SIGNALS_WARNING not in results.warning_messages:
                results.warning_messages.append(MAX_SIGNALS_WARNING)
            results.warning = True
            logger.debug(
                "Indicator match has reached its max signals count %d. "
                "Additional documents not checked are %d",
                self.max_signals,
                remaining_documents,
            )
            return StopReason.MAX_SIGNALS

        if (
            self.suppression_active
            and results.suppressed_alerts_count + results.created_signals_count
            >= self.suppression_limit
        ):
            logger.debug(
                "Indicator match has reached its max signals count %d. "
                "Additional documents not checked are %d",
                self.suppression_limit,
                remaining_documents,
            )
            return StopReason.SUPPRESSION_LIMIT

        if self.descending and has_negative_date_sort(page.search_after):
            logger.debug(
                "Negative date sort id value encountered: %s. Threat search stopped.",
                page.search_after,
            )
            return StopReason.NEGATIVE_SORT

        return None
