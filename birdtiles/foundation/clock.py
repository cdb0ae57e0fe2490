"""Timezone-aware clock utilities.

All timestamps in birdtiles MUST be UTC-aware.  This module is the single
source of "now" and of today's date key so tests can monkey-patch it
trivially.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def today_key() -> str:
    """Return today's UTC date as ``YYYY-MM-DD``."""
    return utc_now().date().isoformat()
