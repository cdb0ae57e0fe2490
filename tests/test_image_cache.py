"""Tests for the image cache: memoization, coalescing and failure handling."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from birdtiles.services.image_cache import (
    HttpxImageTransport,
    ImageCache,
    ImageFetchError,
    to_data_uri,
)

_URL = "https://img.example/bluejay.jpg"


class GatedTransport:
    """ImageTransport fake whose fetches block until released."""

    def __init__(self, body: bytes = b"\xff\xd8jpeg", content_type: str = "image/jpeg") -> None:
        self.body = body
        self.content_type = content_type
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.fail_with: Exception | None = None

    async def fetch(self, url: str) -> tuple[str, bytes]:
        self.calls.append(url)
        await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return self.content_type, self.body


class InstantTransport(GatedTransport):
    def __init__(self, **kw) -> None:
        super().__init__(**kw)
        self.gate.set()


class TestImageCache:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self) -> None:
        transport = GatedTransport()
        cache = ImageCache(transport)

        first = asyncio.create_task(cache.fetch(_URL))
        second = asyncio.create_task(cache.fetch(_URL))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert cache.is_in_flight(_URL)

        transport.gate.set()
        a, b = await asyncio.gather(first, second)

        assert len(transport.calls) == 1
        assert a == b == to_data_uri("image/jpeg", transport.body)
        assert not cache.is_in_flight(_URL)

    @pytest.mark.asyncio
    async def test_cached_result_skips_network(self) -> None:
        transport = InstantTransport()
        cache = ImageCache(transport)
        await cache.fetch(_URL)
        await cache.fetch(_URL)
        assert len(transport.calls) == 1
        assert len(cache) == 1
        assert cache.get(_URL) is not None

    @pytest.mark.asyncio
    async def test_distinct_urls_fetch_separately(self) -> None:
        transport = InstantTransport()
        cache = ImageCache(transport)
        await asyncio.gather(cache.fetch(_URL), cache.fetch(_URL + "?v=2"))
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self) -> None:
        transport = GatedTransport()
        transport.fail_with = ImageFetchError(_URL, "http 503")
        cache = ImageCache(transport)

        first = asyncio.create_task(cache.fetch(_URL))
        second = asyncio.create_task(cache.fetch(_URL))
        await asyncio.sleep(0)
        transport.gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert len(transport.calls) == 1
        assert all(isinstance(r, ImageFetchError) for r in results)
        assert results[0] is results[1]
        assert cache.get(_URL) is None
        assert not cache.is_in_flight(_URL)

    @pytest.mark.asyncio
    async def test_retry_after_failure_hits_network_again(self) -> None:
        transport = InstantTransport()
        transport.fail_with = ImageFetchError(_URL, "timeout")
        cache = ImageCache(transport)
        with pytest.raises(ImageFetchError):
            await cache.fetch(_URL)

        transport.fail_with = None
        assert await cache.fetch(_URL)
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_fetch(self) -> None:
        transport = GatedTransport()
        cache = ImageCache(transport)
        first = asyncio.create_task(cache.fetch(_URL))
        second = asyncio.create_task(cache.fetch(_URL))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        transport.gate.set()
        assert await second
        assert cache.get(_URL) is not None

    @pytest.mark.asyncio
    async def test_failure_with_no_remaining_waiter_is_still_retrieved(self, caplog) -> None:
        transport = GatedTransport()
        transport.fail_with = ImageFetchError(_URL, "http 500")
        cache = ImageCache(transport)

        lone = asyncio.create_task(cache.fetch(_URL))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        lone.cancel()
        await asyncio.sleep(0)

        with caplog.at_level(logging.INFO, logger="birdtiles.services.image_cache"):
            transport.gate.set()
            for _ in range(5):
                await asyncio.sleep(0)

        assert lone.cancelled()
        assert not cache.is_in_flight(_URL)
        assert "settled with error" in caplog.text
        assert "http 500" in caplog.text


class TestHttpxImageTransport:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"png", headers={"content-type": "image/png"})

        transport = HttpxImageTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        content_type, body = await transport.fetch(_URL)
        await transport.aclose()
        assert content_type == "image/png"
        assert body == b"png"

    @pytest.mark.asyncio
    async def test_missing_content_type_defaults_to_jpeg(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"raw")

        transport = HttpxImageTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        content_type, _ = await transport.fetch(_URL)
        await transport.aclose()
        assert content_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        transport = HttpxImageTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(ImageFetchError, match="http 404"):
            await transport.fetch(_URL)
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport = HttpxImageTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(ImageFetchError):
            await transport.fetch(_URL)
        await transport.aclose()


def test_data_uri() -> None:
    assert to_data_uri("image/png", b"abc") == "data:image/png;base64,YWJj"
