"""Data structures shared by the indicator match components."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from threatmatch.exceptions import QueryTooComplexError


class SortOrder(str, Enum):
    """Document order used when paging events."""

    ASC = "asc"
    DESC = "desc"


class DrivingList(str, Enum):
    """Which list is paged in the outer loop."""

    EVENTS = "events"
    INDICATORS = "indicators"


@dataclass
class DocumentPage:
    """One batch of raw hits from a pager.

    ``search_after`` is the sort value of the last hit and is None when the
    page is empty or the last hit carries no sort. ``total`` is only
    captured on the first page of a listing.
    """

    hits: list[dict[str, Any]] = field(default_factory=list)
    search_after: list[Any] | None = None
    total: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.hits

    def __len__(self) -> int:
        return len(self.hits)


@dataclass
class ThreatMatch:
    """An indicator that matched an event through one mapping group."""

    event_id: str
    indicator_id: str
    indicator_index: str
    group: int
    indicator: dict[str, Any] = field(default_factory=dict)
    feed: dict[str, Any] = field(default_factory=dict)


@dataclass
class CrossMatchResult:
    """Running or per-chunk outcome of cross-matching.

    ``complexity_overflows`` is only populated on chunk results and never
    survives a merge.
    """

    success: bool = True
    warning: bool = False
    created_signals_count: int = 0
    suppressed_alerts_count: int = 0
    errors: list[str] = field(default_factory=list)
    warning_messages: list[str] = field(default_factory=list)
    search_after_times: list[float] = field(default_factory=list)
    bulk_create_times: list[float] = field(default_factory=list)
    enrichment_times: list[float] = field(default_factory=list)
    created_signals: list[dict[str, Any]] = field(default_factory=list)
    complexity_overflows: list[QueryTooComplexError] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.success = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "warning": self.warning,
            "created_signals_count": self.created_signals_count,
            "suppressed_alerts_count": self.suppressed_alerts_count,
            "errors": self.errors,
            "warning_messages": self.warning_messages,
            "search_after_times": self.search_after_times,
            "bulk_create_times": self.bulk_create_times,
            "enrichment_times": self.enrichment_times,
            "created_signals": self.created_signals,
        }


# Alert document builders supplied by the caller
WrapHits = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]
WrapSuppressedHits = Callable[[list[dict[str, Any]]], tuple[list[dict[str, Any]], int]]

# A chunk worker: slice of driving documents in, partial result out
CreateSignal = Callable[[list[dict[str, Any]]], Awaitable[CrossMatchResult]]
