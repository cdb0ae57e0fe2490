"""RarityClassifier — maps an occurrence ratio to a commonality tier.

Cutoffs come straight from user configuration, so they are sanitised at
read time:

    epic'     = clamp(epic, 0, 1)
    rare'     = max(epic', clamp(rare, 0, 1))
    uncommon' = max(rare', clamp(uncommon, 0, 1))

which guarantees ``0 <= epic' <= rare' <= uncommon' <= 1`` for any input.
Non-finite cutoffs fall back to the defaults before clamping.

Classification (lower occurrence = rarer):
    occurrence <= epic'      → Epic
    occurrence <= rare'      → Rare
    occurrence <= uncommon'  → Uncommon
    otherwise                → Common
    missing                  → Unknown
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from birdtiles.domain.display import TierStyle
from birdtiles.domain.enums import CommonalityTier, Glyph

DEFAULT_EPIC = 0.1
DEFAULT_RARE = 0.4
DEFAULT_UNCOMMON = 0.7

TIER_STYLES: dict[CommonalityTier, TierStyle] = {
    CommonalityTier.EPIC: TierStyle(tier=CommonalityTier.EPIC, color="#7c3aed", glyph=Glyph.STAR),
    CommonalityTier.RARE: TierStyle(tier=CommonalityTier.RARE, color="#f59e0b", glyph=Glyph.DIAMOND),
    CommonalityTier.UNCOMMON: TierStyle(tier=CommonalityTier.UNCOMMON, color="#38bdf8", glyph=Glyph.SQUARE),
    CommonalityTier.COMMON: TierStyle(tier=CommonalityTier.COMMON, color="#22c55e", glyph=Glyph.CIRCLE),
    CommonalityTier.UNKNOWN: TierStyle(tier=CommonalityTier.UNKNOWN, color="#9ca3af", glyph=Glyph.HEX),
}


@dataclass(frozen=True)
class Thresholds:
    """Configured occurrence cutoffs, possibly out of order or out of range."""

    epic: float = DEFAULT_EPIC
    rare: float = DEFAULT_RARE
    uncommon: float = DEFAULT_UNCOMMON

    def effective(self) -> Thresholds:
        """Clamped, monotonic cutoffs."""
        epic = _clamp(_finite_or(self.epic, DEFAULT_EPIC))
        rare = max(epic, _clamp(_finite_or(self.rare, DEFAULT_RARE)))
        uncommon = max(rare, _clamp(_finite_or(self.uncommon, DEFAULT_UNCOMMON)))
        return Thresholds(epic=epic, rare=rare, uncommon=uncommon)


class RarityClassifier:
    """Classifies occurrence ratios against the current thresholds.

    Thresholds can be swapped at runtime with ``update``; the next call to
    ``classify`` or ``is_rare`` uses them.
    """

    def __init__(self, thresholds: Thresholds | None = None) -> None:
        self._cutoffs = (thresholds or Thresholds()).effective()

    @property
    def cutoffs(self) -> Thresholds:
        return self._cutoffs

    def update(self, thresholds: Thresholds) -> None:
        self._cutoffs = thresholds.effective()

    def classify(self, occurrence: Optional[float]) -> CommonalityTier:
        if occurrence is None or math.isnan(occurrence):
            return CommonalityTier.UNKNOWN
        if occurrence <= self._cutoffs.epic:
            return CommonalityTier.EPIC
        if occurrence <= self._cutoffs.rare:
            return CommonalityTier.RARE
        if occurrence <= self._cutoffs.uncommon:
            return CommonalityTier.UNCOMMON
        return CommonalityTier.COMMON

    def style(self, occurrence: Optional[float]) -> TierStyle:
        return TIER_STYLES[self.classify(occurrence)]

    def is_rare(self, occurrence: Optional[float]) -> bool:
        """True when *occurrence* is at or below the rare cutoff."""
        if occurrence is None or math.isnan(occurrence):
            return False
        return occurrence <= self._cutoffs.rare


def _finite_or(value: float, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
