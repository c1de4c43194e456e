"""Paged reads of the event and indicator lists.

PATTERN: Template Method
Both pagers return DocumentPage objects; they differ only in how a page is
requested (plain search_after on the event indices, or point in time plus
search_after on the indicator indices).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from threatmatch.detection.indicator_match.pit import PitLifecycleManager
from threatmatch.detection.indicator_match.store import DocumentStore
from threatmatch.detection.indicator_match.types import DocumentPage, SortOrder

logger = logging.getLogger(__name__)


def _total_hits(response: dict[str, Any]) -> int | None:
    total = response.get("hits", {}).get("total")
    if isinstance(total, dict):
        return total.get("value")
    return total


class DocumentPager(ABC):
    """Produces successive pages of one list.

    The first page (requested without a cursor) records the list's total
    hit count; ``reset`` forgets it so a restart from the beginning records
    it again.
    """

    def __init__(
        self,
        store: DocumentStore,
        query: dict[str, Any],
        sort: list[dict[str, Any]],
        per_page: int,
        fields: list[str],
    ):
        self.store = store
        self.query = query
        self.sort = sort
        self.per_page = per_page
        self.fields = fields
        self.total: int | None = None

    @property
    @abstractmethod
    def sort_order(self) -> SortOrder:
        """Order of the primary sort key."""
        ...

    @abstractmethod
    async def _search(self, search_after: list[Any] | None, track_total_hits: bool) -> dict[str, Any]:
        ...

    async def next(self, search_after: list[Any] | None = None) -> DocumentPage:
        """Fetch the page that follows ``search_after`` (the first page when None)."""
        first_page = search_after is None
        response = await self._search(search_after, track_total_hits=first_page)
        hits = response.get("hits", {}).get("hits", [])

        page = DocumentPage(
            hits=hits,
            search_after=hits[-1].get("sort") if hits else None,
        )
        if first_page:
            self.total = _total_hits(response)
            page.total = self.total
        logger.debug("%s fetched %d documents", self.__class__.__name__, len(hits))
        return page

    def reset(self) -> None:
        self.total = None


class EventPager(DocumentPager):
    """Events paged with search_after only."""

    def __init__(
        self,
        store: DocumentStore,
        index: list[str],
        query: dict[str, Any],
        sort: list[dict[str, Any]],
        per_page: int,
        fields: list[str],
        order: SortOrder,
    ):
        super().__init__(store, query, sort, per_page, fields)
        self.index = index
        self._order = order

    @property
    def sort_order(self) -> SortOrder:
        return self._order

    async def _search(self, search_after: list[Any] | None, track_total_hits: bool) -> dict[str, Any]:
        return await self.store.search(
            index=self.index,
            query=self.query,
            sort=self.sort,
            size=self.per_page,
            search_after=search_after,
            fields=self.fields,
            source=False,
            track_total_hits=track_total_hits,
        )


class IndicatorPager(DocumentPager):
    """Indicators paged through the run's point in time."""

    def __init__(
        self,
        store: DocumentStore,
        pit: PitLifecycleManager,
        query: dict[str, Any],
        sort: list[dict[str, Any]],
        per_page: int,
        fields: list[str],
    ):
        super().__init__(store, query, sort, per_page, fields)
        self.pit = pit

    @property
    def sort_order(self) -> SortOrder:
        return SortOrder.DESC

    async def _search(self, search_after: list[Any] | None, track_total_hits: bool) -> dict[str, Any]:
        response = await self.store.search(
            pit=self.pit.search_param(),
            query=self.query,
            sort=self.sort,
            size=self.per_page,
            search_after=search_after,
            fields=self.fields,
            source=False,
            track_total_hits=track_total_hits,
        )
        self.pit.reassign(response.get("pit_id"))
        return response
