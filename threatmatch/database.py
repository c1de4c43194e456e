"""Elasticsearch connection management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from elasticsearch import AsyncElasticsearch

from threatmatch.config import get_settings

settings = get_settings()

_es_client: AsyncElasticsearch | None = None


async def get_elasticsearch() -> AsyncElasticsearch:
    """Get Elasticsearch client."""
    global _es_client
    if _es_client is None:
        _es_client = AsyncElasticsearch(
            hosts=[settings.elasticsearch_url],
            verify_certs=settings.elasticsearch_verify_certs,
            request_timeout=settings.elasticsearch_request_timeout,
        )
    return _es_client


async def close_elasticsearch() -> None:
    """Close Elasticsearch client."""
    global _es_client
    if _es_client is not None:
        await _es_client.close()
        _es_client = None


@asynccontextmanager
async def elasticsearch_context() -> AsyncGenerator[AsyncElasticsearch, Any]:
    """Yield the shared client and close it on exit."""
    es = await get_elasticsearch()
    try:
        yield es
    finally:
        await close_elasticsearch()
