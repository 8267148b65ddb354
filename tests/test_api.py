"""Tests de la API HTTP (servicio mockeado, sin lifespan).

Ejecutar:
    pytest tests/test_api.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from weather_ingest.api import create_app
from weather_ingest.domain.errors import BulkDeleteError, StorePersistError
from weather_ingest.domain.reading import TransportConfig
from weather_ingest.state import RollingWindow


@pytest.fixture
def service(make_reading):
    svc = MagicMock()
    svc.window = RollingWindow()
    for minutes_ago in (30, 20, 10):
        svc.window.insert(make_reading(minutes_ago))
    # Día anterior (NOW es 2024-03-15 12:00 UTC)
    svc.window.insert(make_reading(13 * 60))
    svc.status.return_value = {"instance_id": "abc"}
    svc.transport.status.return_value = {"connected": False}
    svc.clear_historical_data = AsyncMock()
    svc.reconnect = AsyncMock()
    svc.update_transport_config = AsyncMock(side_effect=lambda cfg: cfg)
    return svc


@pytest.fixture
def client(service) -> TestClient:
    # Sin "with": el lifespan (start/stop del servicio) no corre.
    return TestClient(create_app(service))


class TestReadOnlyEndpoints:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_status_delegates_to_service(self, client):
        assert client.get("/status").json() == {"instance_id": "abc"}

    def test_readings_newest_first(self, client, make_reading):
        body = client.get("/readings").json()

        assert body["total"] == 4
        assert body["items"][0]["timestamp"] == make_reading(10).timestamp
        assert body["last_updated"] == make_reading(10).timestamp

    def test_readings_pagination(self, client, make_reading):
        body = client.get("/readings", params={"limit": 2, "offset": 1}).json()

        assert [i["timestamp"] for i in body["items"]] == [
            make_reading(20).timestamp,
            make_reading(30).timestamp,
        ]

    def test_readings_filtered_by_day(self, client, make_reading):
        body = client.get("/readings", params={"date": "2024-03-14"}).json()

        assert body["total"] == 1
        assert body["items"][0]["timestamp"] == make_reading(13 * 60).timestamp

    def test_invalid_limit(self, client):
        assert client.get("/readings", params={"limit": 0}).status_code == 422

    def test_current(self, client, make_reading):
        body = client.get("/readings/current").json()
        assert body["current"]["timestamp"] == make_reading(10).timestamp

    def test_current_when_empty(self, client, service):
        service.window.clear()
        assert client.get("/readings/current").json() == {"current": None, "last_updated": None}


class TestOperatorActions:

    def test_clear_history(self, client, service):
        assert client.delete("/readings").json() == {"status": "cleared"}
        service.clear_historical_data.assert_awaited_once()

    def test_clear_history_failure(self, client, service):
        service.clear_historical_data.side_effect = BulkDeleteError("locked")

        response = client.delete("/readings")

        assert response.status_code == 500
        assert "locked" in response.json()["detail"]

    def test_reconnect(self, client, service):
        response = client.post("/mqtt/reconnect")

        assert response.json()["status"] == "reconnecting"
        service.reconnect.assert_awaited_once()

    def test_update_config(self, client, service):
        response = client.put(
            "/mqtt/config",
            json={"url": "cloud.hivemq", "port": 8884, "topic": "awsData", "password": "secret"},
        )

        assert response.status_code == 200
        assert "password" not in response.json()
        config = service.update_transport_config.await_args.args[0]
        assert isinstance(config, TransportConfig)
        assert config.port == 8884

    def test_update_config_validation(self, client):
        response = client.put("/mqtt/config", json={"url": "", "port": 70000, "topic": "t"})
        assert response.status_code == 422

    def test_update_config_store_failure(self, client, service):
        service.update_transport_config.side_effect = StorePersistError("db down")

        assert client.put(
            "/mqtt/config", json={"url": "h", "port": 1883, "topic": "t"}
        ).status_code == 500
