"""Indicator match correlation.

Cross-references events against threat intelligence indicators:
- Cardinality probe choosing which list drives the scan
- Paged reads with search_after and a point in time
- Concurrent chunked cross-queries with clause-count recovery
- Result aggregation and termination under signal caps
"""

from threatmatch.detection.indicator_match.types import (
    CrossMatchResult,
    DocumentPage,
    DrivingList,
    SortOrder,
    ThreatMatch,
)

__all__ = ["CrossMatchResult", "DocumentPage", "DrivingList", "SortOrder", "ThreatMatch"]
