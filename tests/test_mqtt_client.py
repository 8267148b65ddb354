"""Tests del transport client MQTT (paho mockeado, sin broker real).

Tests:
1. Construcción del cliente según puerto (tcp / wss)
2. Conexión → suscripción → on_connect
3. Entrega de mensajes con message id
4. Desconexión deliberada vs. inesperada
5. Keepalive y reconexión forzada

Ejecutar:
    pytest tests/test_mqtt_client.py -v
"""

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from weather_ingest.domain.reading import TransportConfig
from weather_ingest.mqtt.client import (
    PING_TOPIC,
    MQTTConnectionManager,
    TransportCallbacks,
    load_or_create_client_id,
)


# =============================================================================
# FIXTURES
# =============================================================================

OK = SimpleNamespace(is_failure=False)
REFUSED = SimpleNamespace(is_failure=True)


class PahoFactory:
    """Sustituye a ``mqtt.Client``; guarda cada cliente creado."""

    def __init__(self):
        self.clients = []
        self.calls = []

    def __call__(self, **kwargs):
        client = MagicMock(name=f"paho-{len(self.clients)}")
        client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
        self.calls.append(kwargs)
        self.clients.append(client)
        return client

    @property
    def last(self):
        return self.clients[-1]


@pytest.fixture
def factory() -> PahoFactory:
    return PahoFactory()


@pytest.fixture
def config() -> TransportConfig:
    return TransportConfig(url="broker.local", port=1883, topic="awsData")


@pytest.fixture
def callbacks():
    return TransportCallbacks(
        on_connect=MagicMock(),
        on_disconnect=MagicMock(),
        on_error=MagicMock(),
        on_message=MagicMock(),
    )


def _manager(factory, **kwargs) -> MQTTConnectionManager:
    return MQTTConnectionManager(
        client_id="aws_web_test",
        reconnect_backoff=kwargs.pop("reconnect_backoff", 60.0),
        keepalive_interval=kwargs.pop("keepalive_interval", 60.0),
        client_factory=factory,
        **kwargs,
    )


async def _drain():
    """Deja correr los callbacks re-encolados con call_soon_threadsafe."""
    for _ in range(3):
        await asyncio.sleep(0)


async def _connect_and_subscribe(manager, factory, config, callbacks):
    manager.connect(config, callbacks)
    client = factory.last
    client.on_connect(client, None, {}, OK, None)
    await _drain()
    client.on_subscribe(client, None, 1, [OK], None)
    await _drain()
    return client


# =============================================================================
# CONSTRUCCIÓN
# =============================================================================

class TestClientConstruction:
    """Forma de la conexión según el puerto."""

    @pytest.mark.asyncio
    async def test_plain_tcp(self, factory, config, callbacks):
        manager = _manager(factory)
        manager.connect(config, callbacks)

        kwargs = factory.calls[0]
        assert kwargs["transport"] == "tcp"
        assert kwargs["client_id"] == "aws_web_test"
        assert kwargs["clean_session"] is True
        factory.last.tls_set.assert_not_called()
        factory.last.connect_async.assert_called_once_with("broker.local", 1883, keepalive=15)
        factory.last.loop_start.assert_called_once()
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_secure_websockets_on_8884(self, factory, callbacks):
        config = TransportConfig(
            url="cloud.hivemq", port=8884, topic="awsData", username="u", password="p"
        )
        manager = _manager(factory)
        manager.connect(config, callbacks)

        assert factory.calls[0]["transport"] == "websockets"
        factory.last.ws_set_options.assert_called_once_with(path="/mqtt")
        factory.last.tls_set.assert_called_once()
        factory.last.username_pw_set.assert_called_once_with("u", "p")
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_inactive_config_does_not_connect(self, factory, callbacks):
        manager = _manager(factory)
        manager.connect(
            TransportConfig(url="broker.local", port=1883, topic="awsData", is_active=False),
            callbacks,
        )

        assert factory.clients == []
        assert manager.is_connected() is False

    def test_client_id_is_persisted(self, tmp_path):
        path = tmp_path / "state" / "client_id"
        first = load_or_create_client_id(str(path))
        second = load_or_create_client_id(str(path))

        assert first == second
        assert first.startswith("aws_web_")


# =============================================================================
# CONEXIÓN Y MENSAJES
# =============================================================================

class TestConnectionFlow:
    """CONNACK → SUBSCRIBE → SUBACK → on_connect."""

    @pytest.mark.asyncio
    async def test_connect_subscribes_and_notifies(self, factory, config, callbacks):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)

        client.subscribe.assert_called_once_with("awsData", qos=0)
        callbacks.on_connect.assert_called_once()
        assert manager.is_connected()
        assert manager.is_subscribed()
        assert manager.status()["subscribed_topic"] == "awsData"
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_refused_connection_reports_error(self, factory, config, callbacks):
        manager = _manager(factory)
        manager.connect(config, callbacks)
        client = factory.last

        client.on_connect(client, None, {}, REFUSED, None)
        await _drain()

        assert not manager.is_connected()
        callbacks.on_error.assert_called_once()
        assert "refused" in manager.status()["last_error"]
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_message_is_delivered_with_id(self, factory, config, callbacks):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)

        msg = SimpleNamespace(topic="awsData", payload=b'{"timestamp": 1704067200}')
        client.on_message(client, None, msg)
        await _drain()

        callbacks.on_message.assert_called_once_with(msg.payload, "awsData-1704067200")
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_async_message_callback_is_scheduled(self, factory, config):
        received = []

        async def on_message(payload, message_id):
            received.append(message_id)

        manager = _manager(factory)
        client = await _connect_and_subscribe(
            manager, factory, config, TransportCallbacks(on_message=on_message)
        )

        client.on_message(client, None, SimpleNamespace(topic="awsData", payload=b"raw"))
        await _drain()

        assert len(received) == 1
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_callbacks_of_replaced_client_are_ignored(self, factory, config, callbacks):
        manager = _manager(factory)
        old = await _connect_and_subscribe(manager, factory, config, callbacks)

        manager.connect(config, callbacks)
        old.on_message(old, None, SimpleNamespace(topic="awsData", payload=b"late"))
        await _drain()

        callbacks.on_message.assert_not_called()
        manager.disconnect()


# =============================================================================
# DESCONEXIÓN / RECONEXIÓN
# =============================================================================

class TestReconnection:
    """Desconexiones y reconexión con backoff."""

    @pytest.mark.asyncio
    async def test_intentional_disconnect_is_quiet(self, factory, config, callbacks):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)

        manager.disconnect()
        manager.disconnect()
        client.on_disconnect(client, None, {}, OK, None)
        await _drain()

        client.unsubscribe.assert_called_once_with("awsData")
        client.disconnect.assert_called_once()
        callbacks.on_disconnect.assert_not_called()
        assert manager.reconnect_pending is False
        assert not manager.is_connected()

    @pytest.mark.asyncio
    async def test_unexpected_disconnect_notifies(self, factory, config, callbacks):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)

        client.on_disconnect(client, None, {}, REFUSED, None)
        await _drain()

        callbacks.on_disconnect.assert_called_once()
        assert not manager.is_connected()
        assert not manager.is_subscribed()
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_repeated_failures_schedule_fresh_client(self, factory, config, callbacks):
        manager = _manager(factory, max_rapid_retries=3)
        manager.connect(config, callbacks)
        client = factory.last

        for _ in range(3):
            client.on_connect_fail(client, None)
        await _drain()

        assert manager.reconnect_pending is True
        manager.disconnect()
        assert manager.reconnect_pending is False

    @pytest.mark.asyncio
    async def test_forced_reconnect_builds_new_client(self, factory, config, callbacks):
        manager = _manager(factory, reconnect_backoff=0.01, max_rapid_retries=1)
        manager.connect(config, callbacks)
        client = factory.last

        client.on_connect_fail(client, None)
        await asyncio.sleep(0.05)

        assert len(factory.clients) == 2
        client.loop_stop.assert_called()
        assert manager.status()["reconnect_attempts"] == 1
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_loop_stop_failure_is_logged(self, factory, config, callbacks, caplog):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)
        client.loop_stop.side_effect = RuntimeError("network thread stuck")

        with caplog.at_level(logging.WARNING, logger="weather_ingest.mqtt.client"):
            manager.disconnect()
            for _ in range(50):
                if not manager._tasks:
                    break
                await asyncio.sleep(0.01)

        assert "network thread stuck" in caplog.text
        assert not manager._tasks


class TestKeepalive:
    """Tick periódico: ping si hay conexión, reconexión si no."""

    @pytest.mark.asyncio
    async def test_ping_when_connected(self, factory, config, callbacks):
        manager = _manager(factory)
        client = await _connect_and_subscribe(manager, factory, config, callbacks)

        manager._keepalive_tick()

        client.publish.assert_called_once_with(PING_TOPIC, "ping", qos=0, retain=False)
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_when_connection_is_down(self, factory, config, callbacks):
        manager = _manager(factory, connect_timeout=0.0)
        manager.connect(config, callbacks)

        manager._keepalive_tick()

        assert len(factory.clients) == 2
        manager.disconnect()

    @pytest.mark.asyncio
    async def test_no_reconnect_while_connecting(self, factory, config, callbacks):
        manager = _manager(factory, connect_timeout=30.0)
        manager.connect(config, callbacks)

        manager._keepalive_tick()

        assert len(factory.clients) == 1
        manager.disconnect()
