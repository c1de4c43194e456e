"""Cardinality probe deciding which list drives the scan."""

import asyncio
import logging
from typing import Any

from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.detection.indicator_match.types import DrivingList
from threatmatch.exceptions import CardinalityProbeError

logger = logging.getLogger(__name__)


def choose_driving_list(event_count: int, indicator_count: int) -> DrivingList:
    """Page whichever list is smaller; ties go to the indicators."""
    if event_count < indicator_count:
        return DrivingList.EVENTS
    return DrivingList.INDICATORS


class CardinalityProbe:
    """Counts both lists before the main loop."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _count(self, side: str, index: list[str], query: dict[str, Any]) -> int:
        try:
            return await self.store.count(index, query)
        except Exception as e:
            raise CardinalityProbeError(side, e) from e

    async def probe(
        self,
        event_index: list[str],
        event_query: dict[str, Any],
        indicator_index: list[str],
        indicator_query: dict[str, Any],
    ) -> tuple[int, int]:
        """Return ``(event_count, indicator_count)``.

        Raises:
            CardinalityProbeError: either count failed
        """
        event_count, indicator_count = await asyncio.gather(
            self._count("event", event_index, event_query),
            self._count("indicator", indicator_index, indicator_query),
        )
        logger.debug("Total event count: %d", event_count)
        logger.debug("Total indicator items: %d", indicator_count)
        return event_count, indicator_count
