"""Bulk persistence of produced alerts to Elasticsearch."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from elasticsearch import AsyncElasticsearch
from elasticsearch.helpers import async_bulk

logger = logging.getLogger(__name__)


@dataclass
class BulkCreateResult:
    """Outcome of one bulk write."""

    created_items: list[dict[str, Any]] = field(default_factory=list)
    existing_items: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    took_ms: float = 0.0

    @property
    def created_count(self) -> int:
        return len(self.created_items)


def _error_item(error: dict[str, Any]) -> tuple[str | None, int | None, str]:
    op = next(iter(error.values()), {}) if error else {}
    reason = op.get("error")
    if isinstance(reason, dict):
        reason = reason.get("reason") or reason.get("type")
    return op.get("_id"), op.get("status"), str(reason)


class AlertWriter:
    """Writes alert documents with create semantics.

    Alerts carry deterministic ids, so a document that already exists
    (HTTP 409) is not an error. Such alerts are returned in
    ``existing_items`` for the caller to account for.
    """

    def __init__(self, es: AsyncElasticsearch, index: str):
        """Initialize alert writer.

        Args:
            es: Elasticsearch client
            index: Target alerts index
        """
        self.es = es
        self.index = index

    async def bulk_create(self, alerts: list[dict[str, Any]]) -> BulkCreateResult:
        """Write alerts and report which were created.

        Args:
            alerts: Alert documents, each with an ``_id``

        Returns:
            BulkCreateResult with created and pre-existing alerts, errors
            and elapsed time
        """
        if not alerts:
            return BulkCreateResult()

        actions = [
            {
                "_op_type": "create",
                "_index": self.index,
                "_id": alert["_id"],
                "_source": {k: v for k, v in alert.items() if k != "_id"},
            }
            for alert in alerts
        ]

        start = time.perf_counter()
        _, errors = await async_bulk(
            self.es,
            actions,
            raise_on_error=False,
            raise_on_exception=False,
            refresh="wait_for",
        )
        took_ms = (time.perf_counter() - start) * 1000

        failed_ids: set[str] = set()
        conflict_ids: set[str] = set()
        messages: list[str] = []
        for error in errors if isinstance(errors, list) else []:
            doc_id, status, reason = _error_item(error)
            if doc_id:
                failed_ids.add(doc_id)
            if status == 409:
                conflict_ids.add(doc_id)
                continue
            messages.append(f"Failed to create alert {doc_id}: {reason}")

        created = [alert for alert in alerts if alert["_id"] not in failed_ids]
        existing = [alert for alert in alerts if alert["_id"] in conflict_ids]
        if messages:
            logger.warning("Bulk create reported %d errors", len(messages))
        logger.debug("Created %d of %d alerts in %.1fms", len(created), len(alerts), took_ms)

        return BulkCreateResult(
            created_items=created,
            existing_items=existing,
            errors=messages,
            took_ms=took_ms,
        )
