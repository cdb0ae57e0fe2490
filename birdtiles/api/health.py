"""Health endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from birdtiles.domain.enums import TileKind
from birdtiles.services.pipeline import PipelineController


def create_health_router(pipeline: PipelineController) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        latest = pipeline.latest_detection
        return {
            "status": "ok",
            "broker": pipeline.broker_state,
            "contexts": {kind.value: len(pipeline.contexts_of(kind)) for kind in TileKind},
            "species_today": len(pipeline.aggregator.today_species()),
            "detections_last_hour": pipeline.counter.count(),
            "cached_images": len(pipeline.images),
            "latest_detection": latest.name if latest else None,
        }

    return router
