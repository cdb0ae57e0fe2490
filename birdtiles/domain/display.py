"""Renderer-agnostic display contract.

A DisplayModel is everything a rendering collaborator needs to draw a
species tile.  It deliberately carries no markup, coordinates or pixels.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from birdtiles.domain.enums import CommonalityTier, Glyph


class TierStyle(BaseModel):
    """Fixed visual encoding of a commonality tier."""

    tier: CommonalityTier
    color: str
    glyph: Glyph

    model_config = {"frozen": True}


class DisplayModel(BaseModel):
    """Layout of a single species tile."""

    lines: list[str] = Field(..., max_length=3, description="Wrapped name, at most 3 lines")
    font_size: int = Field(..., gt=0)
    confidence: Optional[float] = None
    count: Optional[int] = Field(default=None, description="Detections in the last hour")
    occurrence: Optional[float] = None
    style: TierStyle
    rare: bool = False

    model_config = {"frozen": True}

    @property
    def tier(self) -> CommonalityTier:
        return self.style.tier

    @property
    def confidence_percent(self) -> int | None:
        if self.confidence is None:
            return None
        return round(self.confidence * 100)

    @property
    def count_label(self) -> str:
        if not self.count or self.count <= 0:
            return ""
        if self.count > 9:
            return "9+"
        return str(self.count)

    @property
    def occurrence_label(self) -> str:
        if self.occurrence is not None:
            return f"{round(self.occurrence * 100)}%"
        if self.count and self.count > 0:
            return str(self.count)
        return ""

    def to_payload(self) -> dict:
        """Wire form pushed to display hosts."""
        data = self.model_dump(mode="json")
        data["confidence_percent"] = self.confidence_percent
        data["count_label"] = self.count_label
        data["occurrence_label"] = self.occurrence_label
        return data


class ImageTile(BaseModel):
    """A resolved bird photo plus the tier marker to overlay on it."""

    data_uri: str
    occurrence: Optional[float] = None
    style: TierStyle

    model_config = {"frozen": True}

    def to_payload(self) -> dict:
        return self.model_dump(mode="json")
