"""Application configuration loaded from environment variables.

The display host can push two override bags at runtime: global settings
and per-context settings.  The effective settings are always rebuilt from
the environment defaults as ``base.merged(global).merged(context)``, so
every effective bag is validated the same way the environment one is and
no earlier bag leaks into a later one.
"""

from __future__ import annotations

from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "birdtiles"
    debug: bool = False
    log_level: str = "INFO"

    # Broker
    mqtt_host: str = "mqtt://localhost"
    mqtt_port: int = 1883
    mqtt_topic: str = "birdnet"
    mqtt_client_id: str = "streamdeck-birdnet"
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_tls: bool = False
    mqtt_reconnect_seconds: int = 5

    # Payload
    payload_key: str = "CommonName"

    # Rarity
    epic_occurrence_threshold: float = 0.1
    rare_occurrence_threshold: float = 0.4
    uncommon_occurrence_threshold: float = 0.7

    # Rotation
    rotation_seconds: float = 4.0
    rare_hold_multiplier: float = 2.0
    rotation_initial_delay_ms: int = 50
    rotation_waiting_retry_seconds: float = 2.0

    # Persistence
    cache_file: str = "birdtiles-cache.json"
    cache_save_delay_seconds: float = 1.0

    # Images
    image_fetch_timeout_seconds: float = 10.0

    model_config = {"env_prefix": "BIRDTILES_"}

    def merged(self, overrides: dict[str, Any] | None) -> Settings:
        """Return a new validated Settings with *overrides* layered on top.

        Unknown keys are ignored.  Raises ``pydantic.ValidationError`` if a
        known key carries a value that cannot be coerced.
        """
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in type(self).model_fields}
        return type(self).model_validate({**self.model_dump(), **known})

    def redacted(self) -> dict[str, Any]:
        """Settings dump safe for logs."""
        data = self.model_dump()
        if data.get("mqtt_password"):
            data["mqtt_password"] = "***"
        return data


settings = Settings()
