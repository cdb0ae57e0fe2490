"""Display Model Builder — turns a species sighting into a tile layout.

Name wrapping:
    Greedy word fill into at most ``max_lines`` lines of ``line_budget``
    characters.  A single word longer than the budget is hard-truncated
    with an ellipsis.  When words are left over after the last line is
    filled, that line is ellipsised to signal overflow.

Font sizing (all values in tile pixels):
    font = min(ceiling, (area_height - (n - 1) * line_gap) // n)
    long lines (> budget chars)     → shrink 1.5 px per extra char
    single line (> 9 chars)         → shrink 2 px per extra char
    never wider than the tile       → font <= usable_width / (chars * 0.62)
    never illegible                 → font >= floor
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from birdtiles.core.rarity import RarityClassifier
from birdtiles.domain.display import DisplayModel

ELLIPSIS = "..."


@dataclass(frozen=True)
class TextLayout:
    """Metrics of the area the species name is drawn into."""

    tile_width: int = 144
    side_padding: int = 26
    area_height: int = 96
    line_gap: int = 6
    line_budget: int = 12
    max_lines: int = 3
    font_ceiling: int = 30
    font_floor: int = 16
    shrink_floor: int = 18
    glyph_width_ratio: float = 0.62


DETECTION_LAYOUT = TextLayout()
ROTATION_LAYOUT = TextLayout(area_height=98, font_ceiling=32)


def truncate(text: str, max_len: int) -> str:
    """Hard-truncate *text* to *max_len* chars, ending in an ellipsis."""
    if len(text) <= max_len:
        return text
    if max_len <= len(ELLIPSIS):
        return text[:max_len]
    return text[: max_len - len(ELLIPSIS)] + ELLIPSIS


def _mark_overflow(line: str, max_len: int) -> str:
    if line.endswith(ELLIPSIS):
        return line
    if len(line) + len(ELLIPSIS) <= max_len:
        return line + ELLIPSIS
    return truncate(line + ELLIPSIS, max_len)


def wrap_name(text: str, max_len: int = 12, max_lines: int = 3) -> list[str]:
    """Greedy word wrap of a species name into at most *max_lines* lines."""
    words = text.split()
    lines: list[str] = []
    current = ""
    overflow = False

    for index, word in enumerate(words):
        candidate = f"{current} {word}".strip()
        if len(candidate) <= max_len:
            current = candidate
        elif current:
            lines.append(current)
            current = truncate(word, max_len)
        else:
            lines.append(truncate(word, max_len))
            current = ""

        if len(lines) == max_lines:
            overflow = bool(current) or index < len(words) - 1
            current = ""
            break

    if current and len(lines) < max_lines:
        lines.append(current)

    if overflow:
        lines[-1] = _mark_overflow(lines[-1], max_len)
    return lines


def font_size_for(lines: list[str], layout: TextLayout = DETECTION_LAYOUT) -> int:
    """Pick a font size inversely related to line count and line length."""
    line_count = max(1, len([line for line in lines if line]))
    longest = max((len(line) for line in lines), default=0)

    size = min(
        float(layout.font_ceiling),
        float((layout.area_height - (line_count - 1) * layout.line_gap) // line_count),
    )
    if longest > layout.line_budget:
        size = max(layout.shrink_floor, size - (longest - layout.line_budget) * 1.5)
    if line_count == 1 and longest > 9:
        size = max(layout.shrink_floor, size - (longest - 9) * 2)

    usable = layout.tile_width - layout.side_padding
    width_fit = math.floor(usable / max(1.0, longest * layout.glyph_width_ratio))
    size = min(size, width_fit)
    return int(max(layout.font_floor, math.floor(size)))


class DisplayModelBuilder:
    """Builds DisplayModels using the live rarity thresholds."""

    def __init__(self, classifier: RarityClassifier) -> None:
        self._classifier = classifier

    def build(
        self,
        name: str,
        confidence: Optional[float] = None,
        count: Optional[int] = None,
        occurrence: Optional[float] = None,
        layout: TextLayout = DETECTION_LAYOUT,
    ) -> DisplayModel:
        lines = wrap_name(name.strip(), layout.line_budget, layout.max_lines)
        return DisplayModel(
            lines=lines,
            font_size=font_size_for(lines, layout),
            confidence=_finite(confidence),
            count=count,
            occurrence=_finite(occurrence),
            style=self._classifier.style(occurrence),
            rare=self._classifier.is_rare(occurrence),
        )


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or math.isnan(value):
        return None
    return value
