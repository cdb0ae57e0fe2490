"""Canonical Detection and per-day SpeciesRecord models.

A Detection is one normalized sighting derived from a broker message.
Every auxiliary field is independently optional: downstream consumers
degrade gracefully when one is missing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from birdtiles.foundation.clock import utc_now


class Detection(BaseModel):
    """A normalized species detection.  Immutable after creation."""

    name: str = Field(..., min_length=1, description="Species display name")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    occurrence: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Local occurrence ratio (lower = rarer)",
    )
    image_url: Optional[str] = None
    detection_date: Optional[str] = Field(
        default=None,
        pattern=r"^\d{4}-\d{2}-\d{2}$",
        description="Date the detection belongs to (YYYY-MM-DD)",
    )
    received_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class SpeciesRecord(BaseModel):
    """Aggregated sightings of one species on one day.

    ``occurrence`` holds the minimum ever observed that day, so a rare
    reading is never forgotten because of a later, more common-looking one.
    ``confidence`` and ``last_seen`` track the most recent observation.
    """

    name: str = Field(..., min_length=1)
    occurrence: Optional[float] = None
    confidence: Optional[float] = None
    last_seen: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @classmethod
    def from_detection(cls, detection: Detection, seen_at: datetime) -> SpeciesRecord:
        return cls(
            name=detection.name,
            occurrence=detection.occurrence,
            confidence=detection.confidence,
            last_seen=seen_at,
        )

    def merged(self, detection: Detection, seen_at: datetime) -> SpeciesRecord:
        """Fold a newer detection of the same species into this record."""
        if detection.occurrence is None:
            occurrence = self.occurrence
        elif self.occurrence is None:
            occurrence = detection.occurrence
        else:
            occurrence = min(self.occurrence, detection.occurrence)

        confidence = detection.confidence if detection.confidence is not None else self.confidence
        return SpeciesRecord(
            name=self.name,
            occurrence=occurrence,
            confidence=confidence,
            last_seen=seen_at,
        )

    @property
    def sort_occurrence(self) -> float:
        # Missing occurrence ranks as common as possible.
        return self.occurrence if self.occurrence is not None else 1.0
