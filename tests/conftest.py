"""Fixtures compartidas de los tests de ingesta."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Union

import pytest
from sqlalchemy import create_engine

from weather_ingest.domain.reading import Reading, format_timestamp
from weather_ingest.store import SqlReadingStore, ensure_schema

# "Ahora" fijo de los tests: todas las lecturas se construyen relativas a él.
NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def make_reading() -> Callable[..., Reading]:
    """Fábrica de lecturas válidas. ``ts`` puede ser datetime, str o minutos antes de NOW."""

    def _make(ts: Union[datetime, str, int] = 0, **overrides) -> Reading:
        if isinstance(ts, int):
            ts = NOW - timedelta(minutes=ts)
        if isinstance(ts, datetime):
            ts = format_timestamp(ts)
        values = {
            "temperature": 21.5,
            "humidity": 64.0,
            "pressure": 1012.8,
            "radiation": 430.0,
            "wind_speed": 2.4,
            "wind_direction": 135.0,
            "rainfall": 0.0,
        }
        values.update(overrides)
        return Reading(timestamp=ts, **values)

    return _make


@pytest.fixture
def engine(tmp_path):
    """Engine SQLite en un archivo temporal con el esquema creado."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'weather.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> SqlReadingStore:
    return SqlReadingStore(engine)


@pytest.fixture
def settings_env(monkeypatch, tmp_path):
    """Entorno mínimo para ``get_settings()`` sin .env real."""
    monkeypatch.setenv("WEATHER_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'service.db'}")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("MQTT_CLIENT_ID_FILE", str(tmp_path / "client_id"))
    monkeypatch.setenv("DEDUP_CACHE_FILE", str(tmp_path / "processed.json"))
    return monkeypatch
