"""Standardized exceptions for indicator match rule execution."""

from enum import Enum
from typing import Any

# =============================================================================
# Base Exception
# =============================================================================


class ThreatMatchException(Exception):
    """Base exception for threatmatch errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


# =============================================================================
# Fatal Run Errors
# =============================================================================


class CardinalityProbeError(ThreatMatchException):
    """Event or indicator count query failed; the run cannot choose a driving list."""

    def __init__(self, side: str, cause: BaseException):
        self.side = side
        super().__init__(
            message=f"Failed to count {side} documents: {cause}",
            code="CARDINALITY_PROBE_FAILED",
            details={"side": side},
        )


class ExecutionIntervalExceededError(ThreatMatchException):
    """The rule run outlived its allotted schedule interval."""

    def __init__(self, interval: str):
        self.interval = interval
        super().__init__(
            message=(
                f"Current rule execution has exceeded its allotted interval ({interval}) "
                "and has been stopped."
            ),
            code="EXECUTION_INTERVAL_EXCEEDED",
            details={"interval": interval},
        )


class InvalidRuleIntervalError(ThreatMatchException):
    """The rule schedule interval could not be parsed."""

    def __init__(self, interval: str):
        self.interval = interval
        super().__init__(
            message=(
                f"Unable to parse rule interval ({interval}); stopping rule execution "
                "since allotted duration is undefined."
            ),
            code="INVALID_RULE_INTERVAL",
            details={"interval": interval},
        )


class PointInTimeError(ThreatMatchException):
    """Opening the indicator point-in-time failed."""

    def __init__(self, index: list[str], cause: BaseException):
        super().__init__(
            message=f"Failed to open point in time on {', '.join(index)}: {cause}",
            code="POINT_IN_TIME_FAILED",
            details={"index": index},
        )


# =============================================================================
# Recoverable Errors
# =============================================================================


class QueryTooComplexKind(str, Enum):
    """Flavors of clause-count rejection reported by Elasticsearch."""

    FAILED_TO_CREATE_QUERY = "failed_to_create_query"
    TOO_MANY_NESTED_CLAUSES = "too_many_nested_clauses"


class QueryTooComplexError(ThreatMatchException):
    """A cross-query exceeded the search engine's clause-count ceiling.

    Raised by the document store adapter so callers never need to inspect
    Elasticsearch error text themselves.
    """

    def __init__(
        self,
        max_clauses: int | None,
        kind: QueryTooComplexKind = QueryTooComplexKind.FAILED_TO_CREATE_QUERY,
        reason: str = "",
    ):
        self.max_clauses = max_clauses
        self.kind = kind
        self.reason = reason
        message = f"maxClauseCount error received from elasticsearch ({kind.value})"
        if max_clauses is not None:
            message = f"{message}, maxClauseCount is set to {max_clauses}"
        super().__init__(
            message=message,
            code="QUERY_TOO_COMPLEX",
            details={"max_clauses": max_clauses, "kind": kind.value},
        )
