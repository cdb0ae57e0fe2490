"""Outbound display driver.

The pipeline addresses display *contexts* (independent tile slots) and
never knows how a tile reaches the screen.  All driver calls are
synchronous so a pipeline handler can finish mutating shared state and
push its updates without yielding to the event loop in between.

``WebSocketDisplayDriver`` delivers updates to connected display hosts:
each host connection owns an ``asyncio.Queue`` drained by its own writer
task, and each context is bound to the connection that registered it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Union

from birdtiles.domain.display import DisplayModel, ImageTile
from birdtiles.domain.enums import TileVariant

logger = logging.getLogger(__name__)

TileModel = Union[DisplayModel, ImageTile]


class DisplayDriver(Protocol):
    """Display collaborator consumed by the pipeline."""

    def update_tile(self, context: str, model: TileModel, variant: TileVariant) -> None:
        ...

    def set_error(self, context: str) -> None:
        ...

    def set_waiting(self, context: str) -> None:
        ...


class WebSocketDisplayDriver:
    """Routes tile updates to the host connection owning each context."""

    def __init__(self) -> None:
        self._routes: dict[str, asyncio.Queue[dict[str, Any]]] = {}

    # ── Context routing ──────────────────────────────────────────────

    def bind(self, context: str, outbox: asyncio.Queue[dict[str, Any]]) -> None:
        self._routes[context] = outbox

    def unbind(self, context: str) -> None:
        self._routes.pop(context, None)

    def routes_to(self, context: str, outbox: asyncio.Queue[dict[str, Any]]) -> bool:
        """True if *context* is currently delivered to *outbox*."""
        return self._routes.get(context) is outbox

    @property
    def bound_count(self) -> int:
        return len(self._routes)

    # ── DisplayDriver ────────────────────────────────────────────────

    def update_tile(self, context: str, model: TileModel, variant: TileVariant) -> None:
        self._send(context, {
            "event": "updateTile",
            "context": context,
            "variant": variant.value,
            "model": model.to_payload(),
        })

    def set_error(self, context: str) -> None:
        self._send(context, {"event": "setError", "context": context})

    def set_waiting(self, context: str) -> None:
        self._send(context, {"event": "setWaiting", "context": context})

    def _send(self, context: str, message: dict[str, Any]) -> None:
        outbox = self._routes.get(context)
        if outbox is None:
            logger.debug("Dropping %s for unbound context %s", message["event"], context)
            return
        outbox.put_nowait(message)
