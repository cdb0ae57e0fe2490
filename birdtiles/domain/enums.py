"""Controlled enumerations for the birdtiles domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from enum import Enum


class CommonalityTier(str, Enum):
    """How common a species is locally, derived from its occurrence ratio."""

    UNKNOWN = "Unknown"
    COMMON = "Common"
    UNCOMMON = "Uncommon"
    RARE = "Rare"
    EPIC = "Epic"


class Glyph(str, Enum):
    """Marker shape drawn next to a species to encode its tier."""

    HEX = "hex"
    CIRCLE = "circle"
    SQUARE = "square"
    DIAMOND = "diamond"
    STAR = "star"


class TileKind(str, Enum):
    """What a registered display context wants to show."""

    TEXT = "text"
    METER = "meter"
    IMAGE = "image"
    TODAY = "today"


class TileVariant(str, Enum):
    """Rendering variant attached to each outbound tile update."""

    TEXT = "text"
    RING_METER = "ring-meter"
    IMAGE = "image"
    ROTATION = "rotation"


# Variant used when pushing a detection to a context of a given kind.
VARIANT_FOR_KIND: dict[TileKind, TileVariant] = {
    TileKind.TEXT: TileVariant.TEXT,
    TileKind.METER: TileVariant.RING_METER,
    TileKind.IMAGE: TileVariant.IMAGE,
    TileKind.TODAY: TileVariant.ROTATION,
}
