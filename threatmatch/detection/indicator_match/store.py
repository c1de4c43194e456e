"""Thin adapter over AsyncElasticsearch for the calls indicator matching needs.

Every search failure that Elasticsearch reports as a clause-count rejection,
whether as an API error or as a shard failure inside a partial response, is
raised as QueryTooComplexError.
"""

import logging
from typing import Any

from elasticsearch import ApiError, AsyncElasticsearch

from threatmatch.detection.indicator_match.overflow import parse_query_too_complex

logger = logging.getLogger(__name__)


def _shard_failure_reasons(response: dict[str, Any]) -> list[str]:
    failures = response.get("_shards", {}).get("failures") or []
    reasons = []
    for failure in failures:
        reason = failure.get("reason") or {}
        text = reason.get("reason") or ""
        caused_by = reason.get("caused_by") or {}
        if caused_by.get("reason"):
            text = f"{text} {caused_by['reason']}"
        reasons.append(text)
    return reasons


class DocumentStore:
    """Document store driver used by pagers and chunk workers."""

    def __init__(self, es: AsyncElasticsearch):
        """Initialize the store.

        Args:
            es: Elasticsearch client
        """
        self.es = es

    async def count(self, index: list[str], query: dict[str, Any]) -> int:
        """Count documents matching a query."""
        response = await self.es.count(
            index=index,
            query=query,
            ignore_unavailable=True,
            allow_no_indices=True,
        )
        return int(response["count"])

    async def search(
        self,
        *,
        query: dict[str, Any],
        sort: list[dict[str, Any]],
        size: int,
        index: list[str] | None = None,
        search_after: list[Any] | None = None,
        pit: dict[str, Any] | None = None,
        fields: list[str] | None = None,
        source: bool | list[str] = False,
        track_total_hits: bool = False,
    ) -> dict[str, Any]:
        """Run one page of a search.

        Either ``index`` (plain search_after paging) or ``pit`` must be given.

        Raises:
            QueryTooComplexError: the query exceeded the clause ceiling
        """
        kwargs: dict[str, Any] = {
            "query": query,
            "sort": sort,
            "size": size,
            "source": source,
            "track_total_hits": track_total_hits,
        }
        if pit is not None:
            kwargs["pit"] = pit
        else:
            kwargs["index"] = index
            kwargs["ignore_unavailable"] = True
            kwargs["allow_no_indices"] = True
        if search_after is not None:
            kwargs["search_after"] = search_after
        if fields:
            kwargs["fields"] = fields

        try:
            response = await self.es.search(**kwargs)
        except ApiError as e:
            overflow = parse_query_too_complex(f"{e} {e.body}")
            if overflow is not None:
                raise overflow from e
            raise

        body = response.body if hasattr(response, "body") else response
        for reason in _shard_failure_reasons(body):
            overflow = parse_query_too_complex(reason)
            if overflow is not None:
                raise overflow
        return body

    async def open_point_in_time(self, index: list[str], keep_alive: str) -> str:
        """Open a point in time and return its id."""
        response = await self.es.open_point_in_time(
            index=index,
            keep_alive=keep_alive,
            ignore_unavailable=True,
        )
        return response["id"]

    async def close_point_in_time(self, pit_id: str) -> None:
        """Release a point in time."""
        await self.es.close_point_in_time(id=pit_id)
