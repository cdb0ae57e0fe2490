"""RotationScheduler — cycles each "today" tile through today's species.

State machine, one instance per registered context:

    Idle ──start──▶ Scheduled ──timer fires──▶ tick ──▶ Scheduled ──▶ …
      ▲                                                     │
      └──────────────────────────── stop ───────────────────┘

Each tick:
    - no species yet  → show the waiting placeholder, retry after a short
      fixed interval (never below half a second), leave the index untouched
    - otherwise       → show species[index % len], advance the index, and
      hold for ``rotation_seconds`` (times ``rare_hold_multiplier`` when the
      species just shown is at or below the rare cutoff)

Timing changes take effect on the next delay computation; an already armed
timer is not rescheduled.  Contexts share nothing: each has its own index
and its own timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from birdtiles.core.layout import ROTATION_LAYOUT, DisplayModelBuilder
from birdtiles.core.rolling import RollingCounter
from birdtiles.domain.enums import TileVariant
from birdtiles.services.display import DisplayDriver
from birdtiles.store.daily_aggregate import DailyAggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationTiming:
    """Delays used by the scheduler, in seconds."""

    rotation_seconds: float = 4.0
    rare_hold_multiplier: float = 2.0
    initial_delay: float = 0.05
    waiting_retry: float = 2.0


@dataclass
class RotationState:
    """Per-context rotation state."""

    species_index: int = 0
    pending_timer: Optional[asyncio.TimerHandle] = None
    last_tier_was_rare: bool = False

    @property
    def scheduled(self) -> bool:
        return self.pending_timer is not None

    def cancel_timer(self) -> None:
        if self.pending_timer is not None:
            self.pending_timer.cancel()
            self.pending_timer = None


class RotationScheduler:
    """Drives every rotating tile from the daily aggregate."""

    _MIN_DELAY = 0.001
    _MIN_WAITING_RETRY = 0.5

    def __init__(
        self,
        aggregator: DailyAggregator,
        builder: DisplayModelBuilder,
        driver: DisplayDriver,
        counter: RollingCounter | None = None,
        timing: RotationTiming | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._builder = builder
        self._driver = driver
        self._counter = counter
        self._timing = timing or RotationTiming()
        self._states: dict[str, RotationState] = {}

    # ── Configuration ────────────────────────────────────────────────

    @property
    def timing(self) -> RotationTiming:
        return self._timing

    def configure(self, timing: RotationTiming) -> None:
        self._timing = timing

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self, context: str, immediate: bool = False) -> None:
        """Begin (or restart) rotation for *context*.

        An existing state keeps its index; only its pending timer is
        replaced.  ``immediate`` ticks synchronously instead of waiting for
        the short initial delay.
        """
        state = self._states.get(context)
        if state is None:
            state = RotationState()
            self._states[context] = state
            logger.debug("Rotation state created for %s", context)
        state.cancel_timer()

        if immediate:
            self.tick(context)
        else:
            self._arm(context, state, self._timing.initial_delay)

    def stop(self, context: str) -> None:
        """Cancel the pending timer and drop the state.  Idempotent."""
        state = self._states.pop(context, None)
        if state is not None:
            state.cancel_timer()
            logger.debug("Rotation stopped for %s", context)

    def stop_all(self) -> None:
        for context in list(self._states):
            self.stop(context)

    def state(self, context: str) -> RotationState | None:
        return self._states.get(context)

    @property
    def contexts(self) -> list[str]:
        return list(self._states)

    # ── Ticking ──────────────────────────────────────────────────────

    def tick(self, context: str) -> float | None:
        """Show the next species on *context* and arm the following tick.

        Returns the armed delay in seconds, or None if the context is not
        rotating.
        """
        state = self._states.get(context)
        if state is None:
            return None
        state.cancel_timer()

        species = self._aggregator.today_species()
        if not species:
            self._driver.set_waiting(context)
            state.last_tier_was_rare = False
            delay = max(self._MIN_WAITING_RETRY, self._timing.waiting_retry)
        else:
            if state.species_index >= len(species):
                state.species_index %= len(species)
            record = species[state.species_index]
            state.species_index += 1

            model = self._builder.build(
                record.name,
                confidence=record.confidence,
                count=self._counter.count() if self._counter else None,
                occurrence=record.occurrence,
                layout=ROTATION_LAYOUT,
            )
            self._driver.update_tile(context, model, TileVariant.ROTATION)
            state.last_tier_was_rare = model.rare
            delay = self.next_delay(state)
            logger.debug("Rotation %s → %s (hold %.2fs)", context, record.name, delay)

        self._arm(context, state, delay)
        return delay

    def next_delay(self, state: RotationState) -> float:
        delay = self._timing.rotation_seconds
        if state.last_tier_was_rare:
            delay *= self._timing.rare_hold_multiplier
        return max(self._MIN_DELAY, delay)

    def _arm(self, context: str, state: RotationState, delay: float) -> None:
        loop = asyncio.get_running_loop()
        state.pending_timer = loop.call_later(delay, self._fire, context)

    def _fire(self, context: str) -> None:
        state = self._states.get(context)
        if state is None:
            return
        state.pending_timer = None
        try:
            self.tick(context)
        except Exception as exc:
            logger.error("Rotation tick failed for %s: %s", context, exc, exc_info=True)
            if context in self._states and not state.scheduled:
                self._arm(context, state, self._timing.waiting_retry)
