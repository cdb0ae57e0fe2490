"""Bird image fetching with memoization and request coalescing.

Design notes:
    - Resolved images are cached by URL as ``data:`` URIs for the lifetime
      of the process.  The set of distinct bird photos is small, so there
      is no eviction.
    - Concurrent requests for the same URL share one underlying fetch.  The
      in-flight entry exists only to coalesce requests; it is removed as
      soon as the fetch settles, whatever the outcome.
    - Failures are propagated to every waiter and never cached, so a later
      request retries the network.
    - Waiters await a shielded task: a caller being cancelled does not
      cancel the shared fetch.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"


class ImageFetchError(Exception):
    """Raised when an image cannot be retrieved."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Image fetch failed for {url}: {reason}")


class ImageTransport(Protocol):
    """Network collaborator used exclusively by the ImageCache."""

    async def fetch(self, url: str) -> tuple[str, bytes]:
        """Return ``(content_type, body)`` or raise ImageFetchError."""
        ...


class HttpxImageTransport:
    """ImageTransport backed by a shared ``httpx.AsyncClient``."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, url: str) -> tuple[str, bytes]:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise ImageFetchError(url, str(exc) or type(exc).__name__) from exc
        if response.is_error:
            raise ImageFetchError(url, f"http {response.status_code}")
        content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        return content_type, response.content

    async def aclose(self) -> None:
        await self._client.aclose()


def to_data_uri(content_type: str, body: bytes) -> str:
    encoded = base64.b64encode(body).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


class ImageCache:
    """URL → data URI cache that never issues duplicate concurrent fetches."""

    def __init__(self, transport: ImageTransport) -> None:
        self._transport = transport
        self._entries: dict[str, str] = {}
        self._in_flight: dict[str, asyncio.Task[str]] = {}

    async def fetch(self, url: str) -> str:
        cached = self._entries.get(url)
        if cached is not None:
            return cached

        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._download(url))
            task.add_done_callback(self._settled)
            self._in_flight[url] = task
        else:
            logger.debug("Joining in-flight fetch for %s", url)
        return await asyncio.shield(task)

    def get(self, url: str) -> str | None:
        return self._entries.get(url)

    def is_in_flight(self, url: str) -> bool:
        return url in self._in_flight

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _settled(task: asyncio.Task) -> None:
        # Retrieve the outcome even when every waiter was cancelled.
        if not task.cancelled() and task.exception() is not None:
            logger.info("Image fetch settled with error: %s", task.exception())

    async def _download(self, url: str) -> str:
        try:
            content_type, body = await self._transport.fetch(url)
            data_uri = to_data_uri(content_type, body)
            self._entries[url] = data_uri
            logger.info("Cached image %s (%d bytes)", url, len(body))
            return data_uri
        finally:
            self._in_flight.pop(url, None)
