import json

import httpx
import pytest

from mnemos.domain.errors import StoreUnavailableError
from mnemos.infrastructure.adapters.invalidation import (
    HttpInvalidationSink,
    LoggingInvalidationSink,
    RecordingInvalidationSink,
)


@pytest.mark.asyncio
async def test_recording_sink_keeps_order():
    sink = RecordingInvalidationSink()
    await sink.invalidate("a")
    await sink.invalidate("b")
    assert sink.scopes == ["a", "b"]


@pytest.mark.asyncio
async def test_logging_sink_accepts_anything():
    await LoggingInvalidationSink().invalidate("project-stats:u:p")


@pytest.mark.asyncio
async def test_http_sink_posts_the_scope():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sink = HttpInvalidationSink("http://cache.local/purge", client=client)

    await sink.invalidate("daily-usage:alice")
    await sink.aclose()

    assert seen == [("POST", "http://cache.local/purge", {"scope": "daily-usage:alice"})]


@pytest.mark.asyncio
async def test_http_error_status_becomes_store_unavailable():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    sink = HttpInvalidationSink("http://cache.local/purge", client=client)

    with pytest.raises(StoreUnavailableError):
        await sink.invalidate("daily-usage:alice")
    await sink.aclose()


@pytest.mark.asyncio
async def test_connection_failure_becomes_store_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    sink = HttpInvalidationSink(
        "http://cache.local/purge", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    with pytest.raises(StoreUnavailableError):
        await sink.invalidate("daily-usage:alice")
    await sink.aclose()
