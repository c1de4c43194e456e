"""Fire-and-forget telemetry for rule execution events."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DETECTION_ALERTS_CHANNEL = "detection-alerts"


class TelemetrySink(ABC):
    """Accepts telemetry messages without ever blocking or failing the caller."""

    @abstractmethod
    def send_async(self, channel: str, messages: list[str]) -> None:
        """Queue messages for a channel and return immediately."""
        pass

    async def flush(self) -> None:
        """Wait for messages still in flight."""
        return None

    async def close(self) -> None:
        """Flush and release resources."""
        await self.flush()


class NullTelemetrySink(TelemetrySink):
    """Discards everything."""

    def send_async(self, channel: str, messages: list[str]) -> None:
        logger.debug("Telemetry disabled, dropping %d messages for %s", len(messages), channel)


class HttpTelemetrySink(TelemetrySink):
    """Posts messages to an HTTP endpoint in background tasks."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        """Initialize HTTP telemetry sink.

        Args:
            url: Endpoint receiving JSON payloads
            timeout: Request timeout in seconds
            client: Optional preconfigured client
        """
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: set[asyncio.Task] = set()

    def send_async(self, channel: str, messages: list[str]) -> None:
        task = asyncio.create_task(self._post({"channel": channel, "messages": messages}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, payload: dict[str, Any]) -> None:
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to send telemetry to %s: %s", self.url, e)

    async def flush(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        await self.client.aclose()
