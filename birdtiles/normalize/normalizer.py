"""PayloadNormalizer — turns raw broker message bodies into Detections.

Resolution order:
    1. The configured dotted field path, if it resolves to a non-empty
       scalar in a JSON body.
    2. The first non-empty string among the well-known name aliases.
    3. The whole trimmed body as a literal species name (a JSON string
       body is unquoted first).

Auxiliary fields (confidence, occurrence, image URL, date) are extracted
independently; a malformed one becomes ``None`` without affecting the rest.
An empty or whitespace-only body yields no Detection at all.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from birdtiles.domain.detection import Detection
from birdtiles.normalize.accessors import (
    CONFIDENCE_ACCESSORS,
    DATE_ACCESSORS,
    IMAGE_URL_ACCESSORS,
    NAME_ACCESSORS,
    OCCURRENCE_ACCESSORS,
    as_date_key,
    as_text,
    as_unit_float,
    first_value,
    resolve_path,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class PayloadNormalizer:
    """Stateless payload → Detection translator.

    Args:
        field_path: Dotted path to the species name, e.g. ``"CommonName"``.
            An empty path skips straight to the alias heuristics.
    """

    def __init__(self, field_path: str = "CommonName") -> None:
        self.field_path = field_path

    def normalize(self, payload: bytes | str) -> Optional[Detection]:
        """Translate one message body.  Never raises."""
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        text = text.strip()
        if not text:
            return None

        doc = self._parse(text)

        if doc is not _MISSING and self.field_path.strip():
            name = self._scalar_name(resolve_path(doc, self.field_path))
            if name is not None:
                return self._build(name, doc)

        if doc is not _MISSING:
            name = first_value(doc, NAME_ACCESSORS, as_text)
            if name is not None:
                return self._build(name, doc)

        if isinstance(doc, str) and doc.strip():
            return Detection(name=doc.strip())
        return Detection(name=text)

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _parse(text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError:
            logger.debug("Payload is not JSON, treating body as literal name")
            return _MISSING

    @staticmethod
    def _scalar_name(value: Any) -> Optional[str]:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return str(value)
        return as_text(value)

    @staticmethod
    def _build(name: str, doc: Any) -> Detection:
        return Detection(
            name=name,
            confidence=first_value(doc, CONFIDENCE_ACCESSORS, as_unit_float),
            occurrence=first_value(doc, OCCURRENCE_ACCESSORS, as_unit_float),
            image_url=first_value(doc, IMAGE_URL_ACCESSORS, as_text),
            detection_date=first_value(doc, DATE_ACCESSORS, as_date_key),
        )
