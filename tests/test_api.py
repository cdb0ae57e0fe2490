"""Tests for the HTTP and WebSocket surface."""

from __future__ import annotations

from fastapi.testclient import TestClient

from birdtiles.config import Settings
from birdtiles.main import create_app
from birdtiles.services.display import WebSocketDisplayDriver
from birdtiles.services.pipeline import PipelineController
from tests.test_image_cache import InstantTransport
from tests.test_persistence import MemoryPersistence
from tests.test_pipeline import BrokerFactory


def _client() -> tuple[TestClient, PipelineController, BrokerFactory]:
    driver = WebSocketDisplayDriver()
    factory = BrokerFactory()
    pipeline = PipelineController(
        Settings(rotation_initial_delay_ms=1, cache_save_delay_seconds=0.01),
        driver,
        broker_factory=factory,
        image_transport=InstantTransport(),
        persistence=MemoryPersistence(),
    )
    app = create_app(pipeline=pipeline, driver=driver)
    return TestClient(app), pipeline, factory


class TestHealth:
    def test_health_reports_state(self) -> None:
        client, _, factory = _client()
        with client:
            response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["broker"] == "connecting"
        assert body["contexts"] == {"text": 0, "meter": 0, "image": 0, "today": 0}
        assert body["species_today"] == 0
        assert body["latest_detection"] is None
        assert len(factory.created) == 1


class TestTilesSocket:
    def test_today_context_without_species_shows_waiting(self) -> None:
        client, pipeline, _ = _client()
        with client, client.websocket_connect("/ws/tiles") as ws:
            ws.send_json({"event": "register", "context": "today-1", "kind": "today"})
            message = ws.receive_json()
            assert message == {"event": "setWaiting", "context": "today-1"}
            assert pipeline.contexts_of() == ["today-1"]

    def test_text_context_receives_latest_detection(self) -> None:
        client, pipeline, _ = _client()
        with client:
            pipeline.handle_message(b'{"CommonName": "Blue Jay", "Confidence": 0.87, "occurrence": 0.05}')
            with client.websocket_connect("/ws/tiles") as ws:
                ws.send_json({"event": "register", "context": "t1", "kind": "text"})
                message = ws.receive_json()
        assert message["event"] == "updateTile"
        assert message["variant"] == "text"
        assert message["model"]["lines"] == ["Blue Jay"]
        assert message["model"]["confidence_percent"] == 87

    def test_unknown_kind_is_rejected(self) -> None:
        client, pipeline, _ = _client()
        with client, client.websocket_connect("/ws/tiles") as ws:
            ws.send_json({"event": "register", "context": "x", "kind": "hologram"})
            assert ws.receive_json() == {"event": "error", "reason": "unknown_kind", "context": "x"}
            assert pipeline.contexts_of() == []

    def test_unknown_event(self) -> None:
        client, _, _ = _client()
        with client, client.websocket_connect("/ws/tiles") as ws:
            ws.send_json({"event": "dance"})
            assert ws.receive_json() == {"event": "error", "reason": "unknown_event"}

    def test_invalid_settings_reported(self) -> None:
        client, _, _ = _client()
        with client, client.websocket_connect("/ws/tiles") as ws:
            ws.send_json({"event": "settings", "settings": {"mqtt_port": "nope"}})
            assert ws.receive_json() == {"event": "error", "reason": "invalid_settings"}

    def test_disconnect_unregisters_contexts(self) -> None:
        client, pipeline, _ = _client()
        with client:
            with client.websocket_connect("/ws/tiles") as ws:
                ws.send_json({"event": "register", "context": "m1", "kind": "meter"})
                ws.send_json({"event": "dance"})
                ws.receive_json()
                assert pipeline.contexts_of() == ["m1"]
            response = client.get("/health")
        assert response.json()["contexts"]["meter"] == 0

    def test_disconnect_leaves_context_taken_over_by_another_host(self) -> None:
        client, pipeline, _ = _client()
        driver = client.app.state.driver
        with client:
            with client.websocket_connect("/ws/tiles") as second:
                with client.websocket_connect("/ws/tiles") as first:
                    first.send_json({"event": "register", "context": "shared", "kind": "meter"})
                    first.send_json({"event": "dance"})
                    first.receive_json()
                    second.send_json({"event": "register", "context": "shared", "kind": "meter"})
                    second.send_json({"event": "dance"})
                    second.receive_json()

                assert pipeline.contexts_of() == ["shared"]
                assert driver.bound_count == 1
                response = client.get("/health")
        assert response.json()["contexts"]["meter"] == 1

    def test_global_settings_event(self) -> None:
        client, pipeline, _ = _client()
        with client, client.websocket_connect("/ws/tiles") as ws:
            ws.send_json({"event": "globalSettings", "settings": {"rotation_seconds": 9}})
            ws.send_json({"event": "settings", "settings": {"mqtt_topic": "local"}})
            ws.send_json({"event": "dance"})
            ws.receive_json()
            assert pipeline.global_overrides == {"rotation_seconds": 9}
            assert pipeline.settings.rotation_seconds == 9.0
            assert pipeline.settings.mqtt_topic == "local"
