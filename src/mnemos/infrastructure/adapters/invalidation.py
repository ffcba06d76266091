"""
Invalidation sinks: where stale cache scopes are reported after a write.
"""

import logging

import httpx

from mnemos.domain.constants import DEFAULT_INVALIDATION_TIMEOUT
from mnemos.domain.errors import StoreUnavailableError
from mnemos.domain.ports import InvalidationSink

logger = logging.getLogger(__name__)


class LoggingInvalidationSink(InvalidationSink):
    """Default sink for hosts without a cache: scopes only show up in debug logs."""

    async def invalidate(self, scope: str) -> None:
        logger.debug(f"Invalidate {scope}")


class RecordingInvalidationSink(InvalidationSink):
    """Keeps every scope it is told about, in order."""

    def __init__(self):
        self.scopes: list[str] = []

    async def invalidate(self, scope: str) -> None:
        self.scopes.append(scope)


class HttpInvalidationSink(InvalidationSink):
    """POSTs ``{"scope": ...}`` to a purge endpoint of the host's cache."""

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_INVALIDATION_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def invalidate(self, scope: str) -> None:
        try:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=self.timeout)
            resp = await self._client.post(self.url, json={"scope": scope})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"Invalidation of {scope} failed: {e}") from e
        logger.debug(f"Invalidated {scope} via {self.url}")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
