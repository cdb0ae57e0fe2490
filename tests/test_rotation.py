"""Tests for the per-context rotation scheduler."""

from __future__ import annotations

import asyncio

import pytest

from birdtiles.core.layout import DisplayModelBuilder
from birdtiles.core.rarity import RarityClassifier
from birdtiles.domain.detection import Detection
from birdtiles.domain.enums import TileVariant
from birdtiles.services.rotation import RotationScheduler, RotationTiming
from birdtiles.store.daily_aggregate import DailyAggregator


class RecordingDriver:
    """DisplayDriver fake that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def update_tile(self, context, model, variant) -> None:
        self.calls.append(("update", context, model, variant))

    def set_error(self, context) -> None:
        self.calls.append(("error", context))

    def set_waiting(self, context) -> None:
        self.calls.append(("waiting", context))

    def updates(self, context: str | None = None) -> list[tuple]:
        return [c for c in self.calls if c[0] == "update" and (context is None or c[1] == context)]

    def shown(self, context: str) -> list[str]:
        return [" ".join(c[2].lines) for c in self.updates(context)]


_TIMING = RotationTiming(rotation_seconds=4, rare_hold_multiplier=2, initial_delay=0.01, waiting_retry=1.5)


def _scheduler(
    species: dict[str, float | None] | None = None,
    timing: RotationTiming = _TIMING,
    day: list[str] | None = None,
):
    day = day if day is not None else ["2026-10-19"]
    aggregator = DailyAggregator(today=lambda: day[0])
    for name, occurrence in (species or {}).items():
        aggregator.upsert(Detection(name=name, occurrence=occurrence))
    driver = RecordingDriver()
    scheduler = RotationScheduler(aggregator, DisplayModelBuilder(RarityClassifier()), driver, timing=timing)
    return scheduler, aggregator, driver


_SPECIES = {"Robin": 0.5, "Owl": 0.1, "Crow": 0.8}


class TestRotationCycle:
    @pytest.mark.asyncio
    async def test_visits_each_species_in_rarity_order_then_repeats(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("ctx", immediate=True)
        scheduler.tick("ctx")
        scheduler.tick("ctx")
        scheduler.tick("ctx")
        assert driver.shown("ctx") == ["Owl", "Robin", "Crow", "Owl"]
        assert all(c[3] == TileVariant.ROTATION for c in driver.updates())
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_rare_species_held_longer(self) -> None:
        scheduler, _, _ = _scheduler(_SPECIES)
        scheduler.start("ctx")
        assert scheduler.tick("ctx") == 8.0  # Owl, rare
        assert scheduler.state("ctx").last_tier_was_rare is True
        assert scheduler.tick("ctx") == 4.0  # Robin
        assert scheduler.state("ctx").last_tier_was_rare is False
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_waiting_when_no_species(self) -> None:
        scheduler, _, driver = _scheduler()
        scheduler.start("ctx")
        delay = scheduler.tick("ctx")
        assert delay == 1.5
        assert driver.calls == [("waiting", "ctx")]
        assert scheduler.state("ctx").species_index == 0
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_index_wraps_when_list_shrinks(self) -> None:
        day = ["2026-10-19"]
        scheduler, aggregator, driver = _scheduler(_SPECIES, day=day)
        scheduler.start("ctx")
        scheduler.tick("ctx")
        scheduler.tick("ctx")
        scheduler.tick("ctx")
        assert scheduler.state("ctx").species_index == 3

        day[0] = "2026-10-20"
        aggregator.upsert(Detection(name="Heron", occurrence=0.3))
        scheduler.tick("ctx")
        assert driver.shown("ctx")[-1] == "Heron"
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_new_species_shows_up_on_later_ticks(self) -> None:
        scheduler, aggregator, driver = _scheduler({"Crow": 0.8})
        scheduler.start("ctx", immediate=True)
        aggregator.upsert(Detection(name="Owl", occurrence=0.1))
        scheduler.tick("ctx")
        scheduler.tick("ctx")
        assert driver.shown("ctx") == ["Crow", "Crow", "Owl"]
        scheduler.stop_all()


class TestRotationLifecycle:
    @pytest.mark.asyncio
    async def test_start_without_immediate_arms_short_timer(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("ctx")
        assert scheduler.state("ctx").scheduled
        assert driver.calls == []
        await asyncio.sleep(0.05)
        assert driver.shown("ctx") == ["Owl"]
        assert scheduler.state("ctx").scheduled
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_immediate_start_ticks_synchronously(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("ctx", immediate=True)
        assert driver.shown("ctx") == ["Owl"]
        assert scheduler.state("ctx").scheduled
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_restart_keeps_index(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("ctx", immediate=True)
        scheduler.start("ctx", immediate=True)
        assert driver.shown("ctx") == ["Owl", "Robin"]
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_stop_cancels_timer_and_is_idempotent(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("ctx")
        timer = scheduler.state("ctx").pending_timer
        scheduler.stop("ctx")
        scheduler.stop("ctx")
        assert timer.cancelled()
        assert scheduler.state("ctx") is None
        await asyncio.sleep(0.03)
        assert driver.calls == []

    @pytest.mark.asyncio
    async def test_tick_on_unknown_context_is_ignored(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        assert scheduler.tick("nope") is None
        assert driver.calls == []

    @pytest.mark.asyncio
    async def test_contexts_rotate_independently(self) -> None:
        scheduler, _, driver = _scheduler(_SPECIES)
        scheduler.start("a", immediate=True)
        scheduler.tick("a")
        scheduler.start("b", immediate=True)
        assert driver.shown("a") == ["Owl", "Robin"]
        assert driver.shown("b") == ["Owl"]
        assert scheduler.state("a").species_index == 2
        assert scheduler.state("b").species_index == 1
        scheduler.stop_all()


class TestRotationConfiguration:
    @pytest.mark.asyncio
    async def test_new_timing_applies_to_next_tick_only(self) -> None:
        scheduler, _, _ = _scheduler({"Crow": 0.8})
        scheduler.start("ctx")
        assert scheduler.tick("ctx") == 4.0
        armed = scheduler.state("ctx").pending_timer

        scheduler.configure(RotationTiming(rotation_seconds=10, rare_hold_multiplier=3))
        assert scheduler.state("ctx").pending_timer is armed
        assert not armed.cancelled()

        assert scheduler.tick("ctx") == 10.0
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_hold_multiplier_change(self) -> None:
        scheduler, _, _ = _scheduler({"Owl": 0.1})
        scheduler.start("ctx")
        scheduler.configure(RotationTiming(rotation_seconds=4, rare_hold_multiplier=3))
        assert scheduler.tick("ctx") == 12.0
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_waiting_retry_has_a_floor(self) -> None:
        scheduler, _, driver = _scheduler(timing=RotationTiming(initial_delay=0.001, waiting_retry=0))
        scheduler.start("ctx")
        await asyncio.sleep(0.05)
        assert driver.calls == [("waiting", "ctx")]
        assert scheduler.tick("ctx") == 0.5
        scheduler.stop_all()
