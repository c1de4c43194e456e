"""Clause-count overflow detection and chunk size recovery."""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from threatmatch.exceptions import QueryTooComplexError, QueryTooComplexKind
from threatmatch.schemas.indicator_match import ThreatMappingGroup

logger = logging.getLogger(__name__)

FAILED_CREATE_QUERY_MAX_CLAUSE = "failed to create query: maxClauseCount is set to"
MANY_NESTED_CLAUSES_ERR = "Query contains too many nested clauses;"

_MAX_CLAUSE_COUNT_RE = re.compile(r"maxClauseCount is set to (\d+)")


def parse_query_too_complex(message: str) -> QueryTooComplexError | None:
    """Recognize an Elasticsearch clause-count rejection in error text.

    Returns None when the message is some other failure.
    """
    if FAILED_CREATE_QUERY_MAX_CLAUSE in message:
        kind = QueryTooComplexKind.FAILED_TO_CREATE_QUERY
    elif MANY_NESTED_CLAUSES_ERR in message:
        kind = QueryTooComplexKind.TOO_MANY_NESTED_CLAUSES
    else:
        return None

    match = _MAX_CLAUSE_COUNT_RE.search(message)
    max_clauses = int(match.group(1)) if match else None
    return QueryTooComplexError(max_clauses=max_clauses, kind=kind, reason=message)


def get_matched_field_count(threat_mapping: list[ThreatMappingGroup]) -> int:
    """Number of distinct indicator fields the mapping compares against."""
    fields = {entry.value for group in threat_mapping for entry in group.entries}
    return max(len(fields), 1)


@dataclass
class PageSizeReduction:
    """Outcome of shrinking the chunk size after an overflow."""

    page_size: int
    kind: QueryTooComplexKind
    max_clauses: int | None

    @property
    def warning_message(self) -> str:
        return (
            f"maxClauseCount error received from elasticsearch ({self.kind.value}), "
            f"setting IM rule page size to {self.page_size}"
        )


def compute_reduced_page_size(
    overflows: Iterable[QueryTooComplexError],
    matched_field_count: int,
    current_page_size: int,
) -> PageSizeReduction | None:
    """Derive a strictly smaller chunk size from the reported overflows.

    The largest clause ceiling reported wins. A ceiling divided by the
    matched field count gives the number of documents one query can hold;
    without a ceiling the current size is halved. Returns None when no
    overflow was reported or the size is already 1.
    """
    overflows = list(overflows)
    if not overflows or current_page_size <= 1:
        return None

    with_ceiling = [o for o in overflows if o.max_clauses is not None]
    if with_ceiling:
        worst = max(with_ceiling, key=lambda o: o.max_clauses)
        candidate = worst.max_clauses // max(matched_field_count, 1)
    else:
        worst = overflows[0]
        candidate = current_page_size // 2

    if candidate >= current_page_size:
        candidate = current_page_size // 2
    page_size = max(candidate, 1)

    logger.debug(
        "Reducing chunk size from %d to %d (max clauses %s, matched fields %d)",
        current_page_size,
        page_size,
        worst.max_clauses,
        matched_field_count,
    )
    return PageSizeReduction(
        page_size=page_size,
        kind=worst.kind,
        max_clauses=worst.max_clauses,
    )
