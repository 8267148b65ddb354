from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env junto al directorio de trabajo del proceso.
    return str(Path.cwd() / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> Optional[str]:
    return os.getenv(name) or None


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: Optional[str]

    mqtt_host: str
    mqtt_port: int
    mqtt_topic: str
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_active: bool
    mqtt_client_id_file: str

    station_id: str

    poll_interval_seconds: float
    lease_check_seconds: float
    reconnect_backoff_seconds: float
    keepalive_seconds: float
    max_rapid_retries: int
    connect_timeout_seconds: float

    dedup_cache_size: int
    message_dedup_cache_size: int
    dedup_cache_file: str

    window_hours: float
    log_level: str

    @property
    def lease_ttl_seconds(self) -> float:
        """Un lease se considera abandonado pasado 1.5x el intervalo de polling."""
        return self.poll_interval_seconds * 1.5


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("WEATHER_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    settings = Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///weather_ingest.db"),
        redis_url=_env_optional("REDIS_URL"),
        mqtt_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        mqtt_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_topic=os.getenv("MQTT_TOPIC", "awsData"),
        mqtt_username=_env_optional("MQTT_USERNAME"),
        mqtt_password=_env_optional("MQTT_PASSWORD"),
        mqtt_active=_env_bool("MQTT_ACTIVE", True),
        mqtt_client_id_file=os.getenv("MQTT_CLIENT_ID_FILE", ".weather_ingest/mqtt_client_id"),
        station_id=os.getenv("STATION_ID", "station-1"),
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "30")),
        lease_check_seconds=float(os.getenv("LEASE_CHECK_SECONDS", "5")),
        reconnect_backoff_seconds=float(os.getenv("RECONNECT_BACKOFF_SECONDS", "5")),
        keepalive_seconds=float(os.getenv("KEEPALIVE_SECONDS", "10")),
        max_rapid_retries=int(os.getenv("MAX_RAPID_RETRIES", "5")),
        connect_timeout_seconds=float(os.getenv("CONNECT_TIMEOUT_SECONDS", "30")),
        dedup_cache_size=int(os.getenv("DEDUP_CACHE_SIZE", "1000")),
        message_dedup_cache_size=int(os.getenv("MESSAGE_DEDUP_CACHE_SIZE", "500")),
        dedup_cache_file=os.getenv("DEDUP_CACHE_FILE", ".weather_ingest/processed_timestamps.json"),
        window_hours=float(os.getenv("WINDOW_HOURS", "24")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.poll_interval_seconds <= 0:
        raise ValueError("POLL_INTERVAL_SECONDS must be > 0")
    if settings.dedup_cache_size <= 0 or settings.message_dedup_cache_size <= 0:
        raise ValueError("dedup cache sizes must be > 0")

    return settings
