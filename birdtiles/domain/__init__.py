from birdtiles.domain.detection import Detection, SpeciesRecord
from birdtiles.domain.display import DisplayModel, ImageTile, TierStyle
from birdtiles.domain.enums import CommonalityTier, Glyph, TileKind, TileVariant

__all__ = [
    "Detection",
    "SpeciesRecord",
    "DisplayModel",
    "ImageTile",
    "TierStyle",
    "CommonalityTier",
    "Glyph",
    "TileKind",
    "TileVariant",
]
