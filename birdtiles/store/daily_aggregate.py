"""In-memory per-day species aggregate.

Design notes:
    - The aggregate is keyed by date (``YYYY-MM-DD``) but only ever retains
      one key.  Every upsert purges all keys other than the one it wrote
      to, so history older than the current day is discarded.
    - A species record keeps the *minimum* occurrence seen that day and the
      most recent confidence / sighting time.
    - Mutations are synchronous.  Callers on the event loop therefore never
      observe a half-applied upsert.
    - An optional ``on_change`` hook fires after each mutation; the pipeline
      wires it to the debounced snapshot saver.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from birdtiles.domain.detection import Detection, SpeciesRecord
from birdtiles.foundation import clock

logger = logging.getLogger(__name__)


class DailyAggregator:
    """Today's species set, merged by name."""

    def __init__(
        self,
        today: Callable[[], str] | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._today = today or clock.today_key
        self._on_change = on_change
        self._days: dict[str, dict[str, SpeciesRecord]] = {}

    # ── Mutation ─────────────────────────────────────────────────────────

    def upsert(self, detection: Detection) -> SpeciesRecord:
        """Merge *detection* into its day's species map and prune other days."""
        date_key = detection.detection_date or self._today()
        day = self._days.setdefault(date_key, {})

        seen_at = clock.utc_now()
        existing = day.get(detection.name)
        if existing is None:
            record = SpeciesRecord.from_detection(detection, seen_at)
            logger.info("New species for %s: %s", date_key, detection.name)
        else:
            record = existing.merged(detection, seen_at)
        day[detection.name] = record

        self._prune_except(date_key)
        self._changed()
        return record

    def restore(self, date_key: str, records: Iterable[SpeciesRecord]) -> int:
        """Load previously persisted records for *date_key*.

        Only today's snapshot is accepted.  Returns the number of records
        restored.
        """
        if date_key != self._today():
            logger.info("Ignoring persisted species for stale day %s", date_key)
            return 0
        day = self._days.setdefault(date_key, {})
        restored = 0
        for record in records:
            day[record.name] = record
            restored += 1
        self._prune_except(date_key)
        return restored

    # ── Queries ──────────────────────────────────────────────────────────

    def today_species(self) -> list[SpeciesRecord]:
        """Today's species, rarest first."""
        day = self._days.get(self._today())
        if not day:
            return []
        return sorted(day.values(), key=lambda r: r.sort_occurrence)

    def get(self, name: str) -> SpeciesRecord | None:
        day = self._days.get(self._today(), {})
        return day.get(name)

    @property
    def date_keys(self) -> list[str]:
        return list(self._days)

    def today_key(self) -> str:
        return self._today()

    # ── Internals ────────────────────────────────────────────────────────

    def _prune_except(self, keep: str) -> None:
        stale = [k for k in self._days if k != keep]
        for key in stale:
            del self._days[key]
        if stale:
            logger.info("Dropped species for %s (kept %s)", ", ".join(stale), keep)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
