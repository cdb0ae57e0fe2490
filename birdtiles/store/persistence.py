"""Snapshot persistence for the daily aggregate.

``JsonFilePersistence`` reads and writes a single JSON document.
``DebouncedSaver`` coalesces bursts of changes into one write: it is an
explicit dirty-flag + single-pending-timer state machine.

    clean ──mark_dirty──▶ dirty+scheduled ──timer──▶ saving ──▶ clean

Marking dirty while a save is already scheduled does not reschedule it.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from birdtiles.domain.detection import Detection, SpeciesRecord

logger = logging.getLogger(__name__)


class CacheSnapshot(BaseModel):
    """Everything that survives a restart."""

    date_key: str
    species: list[SpeciesRecord] = Field(default_factory=list)
    latest_detection: Optional[Detection] = None
    latest_image_url: Optional[str] = None


class SnapshotPersistence(Protocol):
    """Persistence collaborator."""

    def load(self) -> CacheSnapshot | None:
        ...

    def save(self, snapshot: CacheSnapshot) -> None:
        ...


class JsonFilePersistence:
    """Stores the snapshot as one JSON file.  Failures are logged, never raised."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> CacheSnapshot | None:
        try:
            if not self._path.exists():
                return None
            raw = self._path.read_text(encoding="utf-8").strip()
            if not raw:
                return None
            snapshot = CacheSnapshot.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Cache load failed from %s: %s", self._path, exc)
            return None
        logger.info("Cache loaded from %s (%d species)", self._path, len(snapshot.species))
        return snapshot

    def save(self, snapshot: CacheSnapshot) -> None:
        try:
            self._path.write_text(snapshot.model_dump_json(), encoding="utf-8")
        except OSError as exc:
            logger.warning("Cache save failed to %s: %s", self._path, exc)
            return
        logger.debug("Cache saved to %s (%d species)", self._path, len(snapshot.species))


class DebouncedSaver:
    """Coalesces change notifications into a single delayed save.

    Args:
        persistence: Where snapshots are written.
        snapshot_factory: Builds the snapshot at save time, so the latest
            state is written rather than the state at ``mark_dirty`` time.
        delay: Seconds between the first change of a burst and the write.
    """

    def __init__(
        self,
        persistence: SnapshotPersistence,
        snapshot_factory: Callable[[], CacheSnapshot],
        delay: float = 1.0,
    ) -> None:
        self._persistence = persistence
        self._snapshot_factory = snapshot_factory
        self._delay = delay
        self._dirty = False
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def mark_dirty(self) -> None:
        self._dirty = True
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (e.g. during synchronous restore): flush() will pick it up.
            return
        self._timer = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._task = asyncio.ensure_future(self.flush())

    async def flush(self) -> None:
        """Write now if dirty.  Blocking file I/O is pushed to a thread."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._dirty:
            return
        self._dirty = False
        snapshot = self._snapshot_factory()
        try:
            await asyncio.to_thread(self._persistence.save, snapshot)
        except Exception as exc:
            logger.warning("Snapshot save failed: %s", exc, exc_info=True)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
