"""Typed field accessors for heterogeneous detection payloads.

Upstream publishers (BirdNET-Go, BirdNET-Pi bridges, Home Assistant
relays, hand-rolled scripts) disagree on field names, casing and nesting.
Each auxiliary field is described by an ordered tuple of accessors; the
normalizer tries them in sequence and keeps the first usable value.

An accessor never raises: a missing key, a wrong container type or an
unparseable value all yield ``None``.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Mapping, Optional

Accessor = Callable[[Any], Any]

_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")


# ── Accessor constructors ───────────────────────────────────────────────────


def key(*path: str) -> Accessor:
    """Accessor that walks nested mappings along *path*."""

    def _get(doc: Any) -> Any:
        current = doc
        for part in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
        return current

    _get.__name__ = "key:" + ".".join(path)
    return _get


def first_result(field: str) -> Accessor:
    """Accessor for ``results[0].<field>`` style classifier output."""

    def _get(doc: Any) -> Any:
        results = doc.get("results") if isinstance(doc, Mapping) else None
        if not isinstance(results, list) or not results:
            return None
        head = results[0]
        return head.get(field) if isinstance(head, Mapping) else None

    _get.__name__ = f"results[0].{field}"
    return _get


def resolve_path(doc: Any, dotted: str) -> Any:
    """Resolve a user-configured dotted path such as ``"detection.species"``."""
    parts = [p.strip() for p in dotted.split(".") if p.strip()]
    if not parts:
        return None
    return key(*parts)(doc)


# ── Ordered alias lists ─────────────────────────────────────────────────────

NAME_ACCESSORS: tuple[Accessor, ...] = (
    key("CommonName"),
    key("ScientificName"),
    key("SpeciesCode"),
    key("common_name"),
    key("commonName"),
    key("species"),
    key("scientific_name"),
    key("scientificName"),
    key("label"),
    key("name"),
    key("bird_name"),
    key("detection"),
    key("attributes", "common_name"),
    key("attributes", "species"),
    key("event", "common_name"),
    key("event", "species"),
    first_result("common_name"),
    first_result("species"),
)

CONFIDENCE_ACCESSORS: tuple[Accessor, ...] = (
    key("Confidence"),
    key("confidence"),
    key("attributes", "confidence"),
    key("attributes", "Confidence"),
    key("event", "confidence"),
    key("event", "Confidence"),
)

IMAGE_URL_ACCESSORS: tuple[Accessor, ...] = (
    key("BirdImage", "URL"),
    key("BirdImage", "Url"),
    key("BirdImage", "url"),
    key("birdImage", "URL"),
    key("birdImage", "url"),
    key("imageUrl"),
    key("image_url"),
    key("image"),
)

OCCURRENCE_ACCESSORS: tuple[Accessor, ...] = (
    key("occurrence"),
    key("Occurrence"),
)

DATE_ACCESSORS: tuple[Accessor, ...] = (
    key("Date"),
    key("date"),
)


# ── Coercion ────────────────────────────────────────────────────────────────


def as_text(value: Any) -> Optional[str]:
    """Non-blank string, trimmed; anything else is ``None``."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def as_unit_float(value: Any) -> Optional[float]:
    """Number or numeric string within [0, 1]; anything else is ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or not 0.0 <= number <= 1.0:
        return None
    return number


def as_date_key(value: Any) -> Optional[str]:
    """``YYYY-MM-DD`` prefix of a date or datetime string."""
    text = as_text(value)
    if text is None:
        return None
    match = _DATE_PREFIX.match(text)
    return match.group(1) if match else None


def first_value(
    doc: Any,
    accessors: tuple[Accessor, ...],
    coerce: Callable[[Any], Any],
) -> Any:
    """Return the first accessor result that survives *coerce*."""
    for accessor in accessors:
        value = coerce(accessor(doc))
        if value is not None:
            return value
    return None
