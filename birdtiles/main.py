"""birdtiles — BirdNET detections on independently refreshing display tiles.

This is the application entry point.  It wires the PipelineController, the
WebSocket display driver and the HTTP/WebSocket routes together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from birdtiles.api.health import create_health_router
from birdtiles.api.ws_tiles import create_tiles_router
from birdtiles.config import Settings, settings
from birdtiles.services.display import WebSocketDisplayDriver
from birdtiles.services.pipeline import PipelineController

# ── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)


def create_app(
    pipeline: PipelineController | None = None,
    driver: WebSocketDisplayDriver | None = None,
    config: Settings = settings,
) -> FastAPI:
    """Build the FastAPI app around a (possibly injected) pipeline."""

    driver = driver or WebSocketDisplayDriver()
    pipeline = pipeline or PipelineController(config, driver)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(
        title=config.app_name,
        description="BirdNET detections on display tiles",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.driver = driver

    # ── Routes ───────────────────────────────────────────────────────────────

    app.include_router(create_tiles_router(pipeline, driver))
    app.include_router(create_health_router(pipeline))
    return app


app = create_app()
