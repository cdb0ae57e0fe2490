"""WebSocket endpoint for display hosts.

Path: /ws/tiles

A display host registers the contexts (tile slots) it renders and then
just listens.  Inbound events:

    {"event": "register",       "context": "<id>", "kind": "text|meter|image|today"}
    {"event": "unregister",     "context": "<id>"}
    {"event": "settings",       "settings": {...}}    per-context overrides
    {"event": "globalSettings", "settings": {...}}    global overrides

Outbound events are produced by the WebSocketDisplayDriver
(``updateTile``, ``setError``, ``setWaiting``) or are acknowledgements of
malformed input (``error``).  Disconnecting unregisters every context the
host registered, unless another host has since registered the same
context.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from birdtiles.domain.enums import TileKind
from birdtiles.services.display import WebSocketDisplayDriver
from birdtiles.services.pipeline import PipelineController

logger = logging.getLogger(__name__)


def create_tiles_router(
    pipeline: PipelineController,
    driver: WebSocketDisplayDriver,
) -> APIRouter:
    """Factory that wires the tiles endpoint to a pipeline and its driver."""

    router = APIRouter()

    @router.websocket("/ws/tiles")
    async def display_host(websocket: WebSocket) -> None:
        await websocket.accept()
        outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        owned: set[str] = set()
        writer = asyncio.create_task(_drain(websocket, outbox))
        logger.info("Display host connected")

        def release(context: str) -> None:
            # Another host may have taken the context over since.
            if driver.routes_to(context, outbox):
                pipeline.unregister_context(context)
                driver.unbind(context)

        try:
            while True:
                message = await websocket.receive_json()
                event = message.get("event") if isinstance(message, dict) else None

                if event == "register":
                    context = message.get("context")
                    try:
                        kind = TileKind(message.get("kind"))
                    except ValueError:
                        outbox.put_nowait({"event": "error", "reason": "unknown_kind", "context": context})
                        continue
                    if not context:
                        outbox.put_nowait({"event": "error", "reason": "missing_context"})
                        continue
                    driver.bind(context, outbox)
                    owned.add(context)
                    pipeline.register_context(context, kind)

                elif event == "unregister":
                    context = message.get("context")
                    if context in owned:
                        owned.discard(context)
                        release(context)

                elif event in ("settings", "globalSettings"):
                    bag = message.get("settings") or {}
                    if event == "globalSettings":
                        accepted = pipeline.apply_global_settings(bag)
                    else:
                        accepted = pipeline.apply_settings(bag)
                    if not accepted:
                        outbox.put_nowait({"event": "error", "reason": "invalid_settings"})

                else:
                    outbox.put_nowait({"event": "error", "reason": "unknown_event"})

        except WebSocketDisconnect:
            logger.info("Display host disconnected (%d contexts)", len(owned))
        finally:
            for context in owned:
                release(context)
            writer.cancel()

    return router


async def _drain(websocket: WebSocket, outbox: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await outbox.get()
        try:
            await websocket.send_json(message)
        except Exception as exc:
            logger.info("Display host write failed: %s", exc)
            return
