"""MQTT broker collaborator.

paho-mqtt runs its network loop on a background thread.  Every callback is
marshalled onto the asyncio loop with ``call_soon_threadsafe`` and turned
into a ``BrokerEvent`` on a single queue, so the pipeline consumes one
ordered stream: messages are handled strictly in arrival order and never
concurrently with other pipeline state changes.

Reconnection is paho's job (fixed-interval retry); the pipeline only reacts
to the connect / subscribe / error / message events it receives.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Protocol

import paho.mqtt.client as mqtt

from birdtiles.config import Settings

logger = logging.getLogger(__name__)


class BrokerEventKind(str, Enum):
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    MESSAGE = "message"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class BrokerEvent:
    kind: BrokerEventKind
    payload: bytes = b""
    retained: bool = False
    topic: str = ""
    detail: str = ""


@dataclass(frozen=True)
class BrokerAddress:
    scheme: str
    host: str
    port: int

    @property
    def tls(self) -> bool:
        return self.scheme == "mqtts"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


def broker_address(host: str, port: int, tls: bool = False) -> BrokerAddress:
    """Derive the broker address from a loosely formatted host setting.

    ``host`` may carry a scheme, a port or a path; only the bare hostname is
    kept.  An explicit ``mqtts://``/``mqtt://`` scheme wins over *tls*.
    """
    raw = (host or "").strip()
    if raw.startswith("mqtts://"):
        scheme = "mqtts"
    elif raw.startswith("mqtt://"):
        scheme = "mqtt"
    else:
        scheme = "mqtts" if tls else "mqtt"
    bare = raw.split("://", 1)[1] if "://" in raw else raw
    hostname = bare.split("/", 1)[0].split(":", 1)[0] or "localhost"
    return BrokerAddress(scheme=scheme, host=hostname, port=port)


class BrokerClient(Protocol):
    """What the pipeline needs from a broker connection."""

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    async def wait_closed(self) -> None:
        ...

    def events(self) -> AsyncIterator[BrokerEvent]:
        ...


class MqttBrokerClient:
    """Subscribes to one topic and exposes broker activity as an event stream."""

    def __init__(self, settings: Settings, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._settings = settings
        self._address = broker_address(settings.mqtt_host, settings.mqtt_port, settings.mqtt_tls)
        self._topic = settings.mqtt_topic
        self._loop = loop
        self._queue: asyncio.Queue[BrokerEvent | None] = asyncio.Queue()
        self._client: mqtt.Client | None = None
        self._closing: asyncio.Future | None = None

    @property
    def address(self) -> BrokerAddress:
        return self._address

    def start(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._settings.mqtt_client_id,
        )
        if self._settings.mqtt_username:
            client.username_pw_set(
                self._settings.mqtt_username,
                self._settings.mqtt_password or None,
            )
        if self._address.tls:
            client.tls_set()
        delay = max(1, self._settings.mqtt_reconnect_seconds)
        client.reconnect_delay_set(min_delay=delay, max_delay=delay)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        self._client = client
        logger.info("Connecting to %s topic=%s", self._address.url, self._topic)
        try:
            client.connect_async(self._address.host, self._address.port, keepalive=60)
        except (OSError, ValueError) as exc:
            self._emit(BrokerEvent(BrokerEventKind.ERROR, detail=str(exc)))
            return
        client.loop_start()

    def stop(self) -> None:
        """Disconnect and end the event stream without blocking the loop.

        ``loop_stop`` joins paho's network thread, so it runs in the default
        executor; ``wait_closed`` awaits it.
        """
        client, self._client = self._client, None
        if client is not None:
            client.disconnect()
            self._closing = self._loop.run_in_executor(None, client.loop_stop)
            logger.info("Disconnected from %s", self._address.url)
        self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        if self._closing is not None:
            await self._closing

    async def events(self) -> AsyncIterator[BrokerEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    # ── paho callbacks (network thread) ─────────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self._emit(BrokerEvent(BrokerEventKind.ERROR, detail=f"connect refused: {reason_code}"))
            return
        self._emit(BrokerEvent(BrokerEventKind.CONNECTED, detail=self._address.url))
        client.subscribe(self._topic)

    def _on_connect_fail(self, client, userdata) -> None:
        self._emit(BrokerEvent(BrokerEventKind.ERROR, detail="connect failed"))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        failures = [rc for rc in reason_code_list if rc.is_failure]
        if failures:
            self._emit(BrokerEvent(BrokerEventKind.ERROR, detail=f"subscribe refused: {failures[0]}"))
        else:
            self._emit(BrokerEvent(BrokerEventKind.SUBSCRIBED, topic=self._topic))

    def _on_message(self, client, userdata, msg) -> None:
        self._emit(BrokerEvent(
            BrokerEventKind.MESSAGE,
            payload=bytes(msg.payload),
            retained=bool(msg.retain),
            topic=msg.topic,
        ))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._emit(BrokerEvent(BrokerEventKind.CLOSED, detail=str(reason_code)))

    def _emit(self, event: BrokerEvent) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
