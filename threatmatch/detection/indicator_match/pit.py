"""Lifecycle of the indicator-side point in time."""

import logging

from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.exceptions import PointInTimeError

logger = logging.getLogger(__name__)


class PitLifecycleManager:
    """Owns the indicator point-in-time id for one rule run.

    Elasticsearch may hand back a new id with any search response. Chunk
    workers report it through ``reassign``; the id is a single attribute
    replaced in one step on the event loop, so the last observed id wins.
    An older id that is still valid only leads to a later reassignment.
    """

    def __init__(self, store: DocumentStore, index: list[str], keep_alive: str):
        self.store = store
        self.index = index
        self.keep_alive = keep_alive
        self._pit_id: str | None = None

    @property
    def pit_id(self) -> str:
        if self._pit_id is None:
            raise RuntimeError("Point in time is not open. Call open() first.")
        return self._pit_id

    @property
    def is_open(self) -> bool:
        return self._pit_id is not None

    def search_param(self) -> dict[str, str]:
        """The ``pit`` body parameter for a search against the indicators."""
        return {"id": self.pit_id, "keep_alive": self.keep_alive}

    async def open(self) -> str:
        try:
            self._pit_id = await self.store.open_point_in_time(self.index, self.keep_alive)
        except Exception as e:
            raise PointInTimeError(self.index, e) from e
        logger.debug("Opened point in time on %s", ", ".join(self.index))
        return self._pit_id

    def reassign(self, new_pit_id: str | None) -> None:
        """Adopt the id returned by the latest search, if any."""
        if new_pit_id:
            self._pit_id = new_pit_id

    async def close(self) -> None:
        """Close the point in time, logging instead of raising on failure."""
        if self._pit_id is None:
            return
        pit_id = self._pit_id
        self._pit_id = None
        try:
            await self.store.close_point_in_time(pit_id)
        except Exception as e:
            # The id lapses on its own once keep_alive runs out
            logger.warning(
                'Error trying to close point in time: "%s", it will expire within "%s". '
                'Error is: "%s"',
                pit_id,
                self.keep_alive,
                e,
            )

    async def __aenter__(self) -> "PitLifecycleManager":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
