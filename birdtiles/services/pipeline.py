"""PipelineController — from broker messages to tile updates.

Architecture:
    broker  →  BrokerEvent stream  →  PayloadNormalizer  →  Detection
                                                               ↓
                 DailyAggregator · RollingCounter · latest snapshot
                                                               ↓
    display ←  DisplayModelBuilder / ImageCache / RotationScheduler

Every handler here is synchronous up to the point where it hands work to
a background task (image resolution, snapshot save).  Shared state is
therefore never observed half-updated by an interleaved rotation tick.

Retained (replayed) messages update the aggregate and the latest snapshot
but neither count towards the rolling hour nor trigger an immediate
rotation refresh or image push.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from pydantic import ValidationError

from birdtiles.config import Settings
from birdtiles.core.layout import DisplayModelBuilder
from birdtiles.core.rarity import RarityClassifier, Thresholds
from birdtiles.core.rolling import RollingCounter
from birdtiles.domain.detection import Detection
from birdtiles.domain.display import DisplayModel, ImageTile
from birdtiles.domain.enums import VARIANT_FOR_KIND, TileKind, TileVariant
from birdtiles.normalize.normalizer import PayloadNormalizer
from birdtiles.services.broker import BrokerClient, BrokerEvent, BrokerEventKind, MqttBrokerClient
from birdtiles.services.display import DisplayDriver
from birdtiles.services.image_cache import HttpxImageTransport, ImageCache, ImageTransport
from birdtiles.services.rotation import RotationScheduler, RotationTiming
from birdtiles.store.daily_aggregate import DailyAggregator
from birdtiles.store.persistence import (
    CacheSnapshot,
    DebouncedSaver,
    JsonFilePersistence,
    SnapshotPersistence,
)

logger = logging.getLogger(__name__)

BrokerFactory = Callable[[Settings], BrokerClient]


def thresholds_from(settings: Settings) -> Thresholds:
    return Thresholds(
        epic=settings.epic_occurrence_threshold,
        rare=settings.rare_occurrence_threshold,
        uncommon=settings.uncommon_occurrence_threshold,
    )


def _positive(value: float, default: float) -> float:
    return value if value > 0 else default


def timing_from(settings: Settings) -> RotationTiming:
    """Rotation timing for *settings*; non-positive delays fall back to the defaults."""
    defaults = RotationTiming()
    return RotationTiming(
        rotation_seconds=_positive(settings.rotation_seconds, defaults.rotation_seconds),
        rare_hold_multiplier=_positive(settings.rare_hold_multiplier, defaults.rare_hold_multiplier),
        initial_delay=_positive(settings.rotation_initial_delay_ms / 1000, defaults.initial_delay),
        waiting_retry=_positive(settings.rotation_waiting_retry_seconds, defaults.waiting_retry),
    )


class PipelineController:
    """Owns every pipeline component and the set of registered contexts.

    Args:
        settings: Base settings (environment defaults).  Global and
            per-context override bags are layered on top of it.
        driver: Where tile updates are sent.
        broker_factory: Builds a broker client for a settings bag; called
            again on every reconnect.
        image_transport: Network collaborator for the image cache.
        persistence: Snapshot store for the daily aggregate.
    """

    def __init__(
        self,
        settings: Settings,
        driver: DisplayDriver,
        broker_factory: BrokerFactory = MqttBrokerClient,
        image_transport: ImageTransport | None = None,
        persistence: SnapshotPersistence | None = None,
    ) -> None:
        self._base = settings
        self._settings = settings
        self._global_overrides: dict = {}
        self._context_overrides: dict = {}
        self._driver = driver
        self._broker_factory = broker_factory

        self._normalizer = PayloadNormalizer(settings.payload_key)
        self._classifier = RarityClassifier(thresholds_from(settings))
        self._builder = DisplayModelBuilder(self._classifier)
        self._counter = RollingCounter()

        self._persistence = persistence or JsonFilePersistence(settings.cache_file)
        self._saver = DebouncedSaver(
            self._persistence,
            self.snapshot,
            delay=settings.cache_save_delay_seconds,
        )
        self._aggregator = DailyAggregator(on_change=self._saver.mark_dirty)

        self._transport = image_transport or HttpxImageTransport(settings.image_fetch_timeout_seconds)
        self._images = ImageCache(self._transport)
        self._rotation = RotationScheduler(
            self._aggregator,
            self._builder,
            driver,
            counter=self._counter,
            timing=timing_from(settings),
        )

        self._contexts: dict[str, TileKind] = {}
        self._latest_detection: Optional[Detection] = None
        self._latest_image_url: Optional[str] = None

        self._broker: BrokerClient | None = None
        self._consumer: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._running = False
        self.broker_state = "idle"

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def global_overrides(self) -> dict:
        return dict(self._global_overrides)

    @property
    def aggregator(self) -> DailyAggregator:
        return self._aggregator

    @property
    def counter(self) -> RollingCounter:
        return self._counter

    @property
    def classifier(self) -> RarityClassifier:
        return self._classifier

    @property
    def rotation(self) -> RotationScheduler:
        return self._rotation

    @property
    def images(self) -> ImageCache:
        return self._images

    @property
    def saver(self) -> DebouncedSaver:
        return self._saver

    @property
    def latest_detection(self) -> Optional[Detection]:
        return self._latest_detection

    @property
    def latest_image_url(self) -> Optional[str]:
        return self._latest_image_url

    def contexts_of(self, kind: TileKind | None = None) -> list[str]:
        return [c for c, k in self._contexts.items() if kind is None or k == kind]

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Restore the persisted snapshot and connect to the broker."""
        snapshot = await asyncio.to_thread(self._persistence.load)
        if snapshot is not None:
            self.restore(snapshot)
        self._running = True
        self._connect_broker()

    async def stop(self) -> None:
        self._running = False
        broker = self._broker
        self._disconnect_broker()
        if broker is not None:
            await broker.wait_closed()
        if self._consumer is not None:
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        self._rotation.stop_all()
        for task in list(self._background):
            task.cancel()
        await self._saver.flush()
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()

    def restore(self, snapshot: CacheSnapshot) -> None:
        restored = self._aggregator.restore(snapshot.date_key, snapshot.species)
        if snapshot.date_key != self._aggregator.today_key():
            return
        self._latest_detection = snapshot.latest_detection
        self._latest_image_url = snapshot.latest_image_url
        logger.info("Restored %d species for %s", restored, snapshot.date_key)

    def snapshot(self) -> CacheSnapshot:
        return CacheSnapshot(
            date_key=self._aggregator.today_key(),
            species=self._aggregator.today_species(),
            latest_detection=self._latest_detection,
            latest_image_url=self._latest_image_url,
        )

    # ── Configuration ────────────────────────────────────────────────

    def apply_settings(self, overrides: dict) -> bool:
        """Replace the per-context override bag and reconfigure.

        The effective settings are always rebuilt as base, then global
        overrides, then *overrides*; nothing from an earlier context bag
        carries over.  Returns False (and keeps the current settings) if
        the result is invalid.  A valid bag always reconnects a running
        broker.
        """
        return self._reconfigure(self._global_overrides, dict(overrides or {}))

    def apply_global_settings(self, overrides: dict) -> bool:
        """Replace the global override bag; the current context bag still wins."""
        return self._reconfigure(dict(overrides or {}), self._context_overrides)

    def _reconfigure(self, global_overrides: dict, context_overrides: dict) -> bool:
        try:
            updated = self._base.merged(global_overrides).merged(context_overrides)
        except ValidationError as exc:
            logger.warning("Rejected settings update: %s", exc)
            return False

        self._global_overrides = global_overrides
        self._context_overrides = context_overrides
        self._settings = updated
        self._normalizer.field_path = updated.payload_key
        self._classifier.update(thresholds_from(updated))
        self._rotation.configure(timing_from(updated))
        logger.info("Settings applied: %s", updated.redacted())

        if self._running:
            self._connect_broker()
        return True

    # ── Context registry ─────────────────────────────────────────────

    def register_context(self, context: str, kind: TileKind) -> None:
        if self._contexts.get(context) == TileKind.TODAY and kind != TileKind.TODAY:
            self._rotation.stop(context)
        self._contexts[context] = kind
        logger.info("Context %s registered as %s", context, kind.value)

        if kind == TileKind.TODAY:
            self._rotation.start(context)
        elif kind in (TileKind.TEXT, TileKind.METER) and self._latest_detection is not None:
            self._driver.update_tile(
                context,
                self._detection_model(self._latest_detection),
                VARIANT_FOR_KIND[kind],
            )
        elif kind == TileKind.IMAGE and self._latest_image_url:
            occurrence = self._latest_detection.occurrence if self._latest_detection else None
            self._schedule_image(self._latest_image_url, occurrence, context)

    def unregister_context(self, context: str) -> None:
        kind = self._contexts.pop(context, None)
        self._rotation.stop(context)
        if kind is not None:
            logger.info("Context %s unregistered", context)

    # ── Broker events ────────────────────────────────────────────────

    def handle_broker_event(self, event: BrokerEvent) -> None:
        if event.kind == BrokerEventKind.MESSAGE:
            self.handle_message(event.payload, retained=event.retained)
        elif event.kind == BrokerEventKind.CONNECTED:
            self.broker_state = "connected"
            logger.info("Broker connected %s", event.detail)
        elif event.kind == BrokerEventKind.SUBSCRIBED:
            self.broker_state = "subscribed"
            logger.info("Subscribed to %s", event.topic)
            for context in self._non_image_contexts():
                self._driver.set_waiting(context)
        elif event.kind == BrokerEventKind.ERROR:
            self.broker_state = "error"
            logger.warning("Broker error: %s", event.detail)
            for context in self._non_image_contexts():
                self._driver.set_error(context)
        elif event.kind == BrokerEventKind.CLOSED:
            self.broker_state = "closed"
            logger.info("Broker connection closed (%s)", event.detail)

    def handle_message(self, payload: bytes, retained: bool = False) -> Optional[Detection]:
        """Process one broker message.  Returns the Detection, if any."""
        logger.debug("Message bytes=%d retained=%s", len(payload), retained)
        detection = self._normalizer.normalize(payload)
        if detection is None:
            return None

        self._latest_detection = detection
        if detection.image_url:
            self._latest_image_url = detection.image_url
        self._aggregator.upsert(detection)
        if not retained:
            self._counter.record(detection.received_at)

        model = self._detection_model(detection)
        for kind in (TileKind.TEXT, TileKind.METER):
            for context in self.contexts_of(kind):
                self._driver.update_tile(context, model, VARIANT_FOR_KIND[kind])

        if not retained:
            for context in self.contexts_of(TileKind.TODAY):
                self._rotation.start(context, immediate=True)
            if detection.image_url:
                self._schedule_image(detection.image_url, detection.occurrence)
        return detection

    # ── Images ───────────────────────────────────────────────────────

    def _schedule_image(self, url: str, occurrence: Optional[float], context: str | None = None) -> None:
        if context is None and not self.contexts_of(TileKind.IMAGE):
            return
        task = asyncio.ensure_future(self._push_image(url, occurrence, context))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _push_image(self, url: str, occurrence: Optional[float], context: str | None) -> None:
        try:
            data_uri = await self._images.fetch(url)
        except Exception as exc:
            logger.warning("Image fetch error for %s: %s", url, exc)
            return

        tile = ImageTile(data_uri=data_uri, occurrence=occurrence, style=self._classifier.style(occurrence))
        targets = [context] if context is not None else self.contexts_of(TileKind.IMAGE)
        for target in targets:
            if self._contexts.get(target) == TileKind.IMAGE:
                self._driver.update_tile(target, tile, TileVariant.IMAGE)

    # ── Internals ────────────────────────────────────────────────────

    def _detection_model(self, detection: Detection) -> DisplayModel:
        return self._builder.build(
            detection.name,
            confidence=detection.confidence,
            count=self._counter.count(),
            occurrence=detection.occurrence,
        )

    def _non_image_contexts(self) -> list[str]:
        return [c for c, k in self._contexts.items() if k != TileKind.IMAGE]

    def _connect_broker(self) -> None:
        self._disconnect_broker()
        broker = self._broker_factory(self._settings)
        self._broker = broker
        self.broker_state = "connecting"
        broker.start()
        self._consumer = asyncio.ensure_future(self._consume(broker))

    def _disconnect_broker(self) -> None:
        broker, self._broker = self._broker, None
        if broker is not None:
            broker.stop()

    async def _consume(self, broker: BrokerClient) -> None:
        async for event in broker.events():
            try:
                self.handle_broker_event(event)
            except Exception as exc:
                logger.error("Failed to handle broker event %s: %s", event.kind.value, exc, exc_info=True)
