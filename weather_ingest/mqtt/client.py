"""Cliente MQTT de la estación (transport client).

Una única conexión lógica por proceso, propiedad del composition root
(ver ``weather_ingest.service``), no un singleton de módulo.

Responsabilidades:
- Conexión/desconexión al broker y suscripción al topic
- Reconexión con backoff fijo; tras ``max_rapid_retries`` fallos seguidos
  se fuerza un objeto de cliente nuevo
- Keepalive periódico: si no hay conexión ni reconexión en curso, fuerza
  la reconexión
- Entrega de mensajes crudos + message id al callback ``on_message``

paho corre su loop de red en un thread propio; todos sus callbacks se
re-encolan en el event loop con ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, Set

import paho.mqtt.client as mqtt

from ..domain.errors import TransportError
from ..domain.reading import TransportConfig
from .message_dedup import generate_message_id

logger = logging.getLogger(__name__)

PING_TOPIC = "$SYS/ping"
MQTT_KEEPALIVE = 15


def _noop(*args, **kwargs) -> None:
    return None


@dataclass
class TransportCallbacks:
    """Callbacks hacia el resto del pipeline (todas corren en el event loop)."""

    on_connect: Callable[[], Any] = _noop
    on_disconnect: Callable[[], Any] = _noop
    on_error: Callable[[Exception], Any] = _noop
    on_message: Callable[[bytes, str], Any] = _noop


def load_or_create_client_id(path: Optional[str]) -> str:
    """Client id persistente entre reinicios (``aws_web_<hex>_<epoch ms>``)."""
    client_id = f"aws_web_{secrets.token_hex(3)}_{int(time.time() * 1000)}"
    if not path:
        return client_id

    file = Path(path)
    try:
        stored = file.read_text().strip() if file.exists() else ""
        if stored:
            return stored
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_text(client_id)
    except OSError as e:
        logger.warning("[MQTT] Could not persist client id at %s: %s", path, e)
    return client_id


class MQTTConnectionManager:
    """Gestiona la conexión lógica al broker."""

    def __init__(
        self,
        client_id: str,
        reconnect_backoff: float = 5.0,
        keepalive_interval: float = 10.0,
        max_rapid_retries: int = 5,
        connect_timeout: float = 30.0,
        client_factory: Optional[Callable[..., mqtt.Client]] = None,
    ):
        self.client_id = client_id
        self._backoff = reconnect_backoff
        self._keepalive_interval = keepalive_interval
        self._max_rapid_retries = max_rapid_retries
        self._connect_timeout = connect_timeout
        self._client_factory = client_factory or mqtt.Client

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._client: Optional[mqtt.Client] = None
        self._config: Optional[TransportConfig] = None
        self._callbacks = TransportCallbacks()

        # Cada cliente nuevo incrementa la generación; callbacks de clientes viejos se ignoran.
        self._generation = 0
        self._connected = False
        self._connecting = False
        self._connecting_since = 0.0
        self._intentional = True
        self._subscribed_topic: Optional[str] = None

        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._keepalive_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Future] = set()

        self._rapid_failures = 0
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    def connect(self, config: TransportConfig, callbacks: TransportCallbacks) -> None:
        """Conecta (debe llamarse desde el event loop).

        Si ya hay una conexión abierta o en curso, primero se desmonta.
        """
        self._loop = asyncio.get_running_loop()

        if self._client is not None or self._connecting:
            self._shutdown(intentional=True)

        self._config = config
        self._callbacks = callbacks
        self._intentional = False
        self._rapid_failures = 0

        if not config.is_active:
            logger.info("[MQTT] Config inactive, not connecting")
            self._intentional = True
            return

        self._open()
        self._schedule_keepalive()

    def disconnect(self) -> None:
        """Desconexión deliberada. Idempotente; no dispara reconexión."""
        was_open = self._client is not None
        self._shutdown(intentional=True)
        if was_open:
            logger.info("[MQTT] Disconnected (intentional)")

    def is_connected(self) -> bool:
        return self._client is not None and self._connected

    def is_subscribed(self) -> bool:
        return self._subscribed_topic is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def status(self) -> dict:
        return {
            "client_id": self.client_id,
            "connected": self.is_connected(),
            "connecting": self._connecting,
            "subscribed_topic": self._subscribed_topic,
            "broker": f"{self._config.url}:{self._config.port}" if self._config else None,
            "active": bool(self._config and self._config.is_active and not self._intentional),
            "rapid_failures": self._rapid_failures,
            "reconnect_attempts": self._reconnect_attempts,
            "reconnect_pending": self.reconnect_pending,
            "last_error": self._last_error,
        }

    # ------------------------------------------------------------------
    # Ciclo de vida del cliente paho
    # ------------------------------------------------------------------

    def _build_client(self, generation: int) -> mqtt.Client:
        config = self._config
        client = self._client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            transport="websockets" if config.uses_websockets else "tcp",
            clean_session=True,
        )
        if config.uses_websockets:
            client.ws_set_options(path="/mqtt")
        if config.uses_tls:
            client.tls_set()
        if config.has_credentials:
            client.username_pw_set(config.username, config.password)

        # Reintentos rápidos de paho con backoff fijo.
        client.reconnect_delay_set(min_delay=self._backoff, max_delay=self._backoff)

        client.on_connect = partial(self._paho_on_connect, generation)
        client.on_connect_fail = partial(self._paho_on_connect_fail, generation)
        client.on_disconnect = partial(self._paho_on_disconnect, generation)
        client.on_subscribe = partial(self._paho_on_subscribe, generation)
        client.on_message = partial(self._paho_on_message, generation)
        return client

    def _open(self) -> None:
        self._generation += 1
        self._connected = False
        self._connecting = True
        self._connecting_since = time.monotonic()
        self._subscribed_topic = None

        config = self._config
        logger.info(
            "[MQTT] Connecting to %s:%d (%s) topic=%s",
            config.url,
            config.port,
            "ws" if config.uses_websockets else "tcp",
            config.topic,
        )
        try:
            self._client = self._build_client(self._generation)
            self._client.connect_async(config.url, config.port, keepalive=MQTT_KEEPALIVE)
            self._client.loop_start()
        except (OSError, ValueError) as e:
            self._connecting = False
            self._report_error(TransportError(f"Failed to set up MQTT connection: {e}"))
            self._schedule_reconnect()

    def _shutdown(self, intentional: bool) -> None:
        if intentional:
            self._intentional = True
            self._cancel_keepalive()
        self._cancel_reconnect()

        client = self._client
        self._client = None
        self._generation += 1
        self._connected = False
        self._connecting = False
        topic, self._subscribed_topic = self._subscribed_topic, None

        if client is None:
            return
        try:
            if topic:
                client.unsubscribe(topic)
            client.disconnect()
        except (OSError, ValueError) as e:
            logger.warning("[MQTT] Disconnect error: %s", e)

        # loop_stop hace join del thread de red: fuera del event loop.
        if self._loop is not None and not self._loop.is_closed():
            future = self._loop.run_in_executor(None, client.loop_stop)
            self._tasks.add(future)
            future.add_done_callback(self._on_loop_stopped)
        else:
            client.loop_stop()

    def _on_loop_stopped(self, future: asyncio.Future) -> None:
        self._tasks.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("[MQTT] Network loop stop failed: %s", error)

    def _force_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._intentional or self._config is None or not self._config.is_active:
            return
        self._reconnect_attempts += 1
        logger.warning(
            "[MQTT] Forcing fresh connection (attempt %d)", self._reconnect_attempts
        )
        self._shutdown(intentional=False)
        self._rapid_failures = 0
        self._open()

    def _schedule_reconnect(self) -> None:
        if self._intentional or self._reconnect_handle is not None or self._loop is None:
            return
        logger.info("[MQTT] Reconnecting in %.1fs", self._backoff)
        self._reconnect_handle = self._loop.call_later(self._backoff, self._force_reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _register_failure(self) -> None:
        """Un fallo más sin CONNACK. Al llegar al cap, cliente nuevo tras backoff."""
        self._rapid_failures += 1
        if self._rapid_failures >= self._max_rapid_retries:
            logger.warning(
                "[MQTT] %d consecutive failures, replacing client", self._rapid_failures
            )
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def _schedule_keepalive(self) -> None:
        self._cancel_keepalive()
        self._keepalive_handle = self._loop.call_later(
            self._keepalive_interval, self._keepalive_tick
        )

    def _cancel_keepalive(self) -> None:
        if self._keepalive_handle is not None:
            self._keepalive_handle.cancel()
            self._keepalive_handle = None

    def _keepalive_tick(self) -> None:
        self._keepalive_handle = None
        if self._intentional:
            return

        if self.is_connected():
            try:
                self._client.publish(PING_TOPIC, "ping", qos=0, retain=False)
            except (OSError, ValueError) as e:
                logger.debug("[MQTT] Keepalive ping failed: %s", e)
        elif not self._reconnect_in_flight():
            logger.warning("[MQTT] Keepalive found connection down, reconnecting")
            self._force_reconnect()

        self._schedule_keepalive()

    def _reconnect_in_flight(self) -> bool:
        if self._reconnect_handle is not None:
            return True
        if self._connecting:
            return time.monotonic() - self._connecting_since < self._connect_timeout
        return False

    # ------------------------------------------------------------------
    # Callbacks paho (thread de red) → event loop
    # ------------------------------------------------------------------

    def _post(self, fn: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Event loop cerrándose
            pass

    def _paho_on_connect(self, generation, client, userdata, flags, reason_code, properties=None):
        self._post(self._handle_connect, generation, reason_code)

    def _paho_on_connect_fail(self, generation, client, userdata):
        self._post(self._handle_connect_fail, generation)

    def _paho_on_disconnect(self, generation, client, userdata, flags, reason_code, properties=None):
        self._post(self._handle_disconnect, generation, reason_code)

    def _paho_on_subscribe(self, generation, client, userdata, mid, reason_codes, properties=None):
        self._post(self._handle_subscribe, generation, reason_codes)

    def _paho_on_message(self, generation, client, userdata, msg):
        self._post(self._handle_message, generation, msg.topic, msg.payload)

    # ------------------------------------------------------------------
    # Handlers (event loop)
    # ------------------------------------------------------------------

    def _handle_connect(self, generation: int, reason_code) -> None:
        if generation != self._generation or self._client is None:
            return

        if getattr(reason_code, "is_failure", False):
            self._connected = False
            self._report_error(TransportError(f"Connection refused: {reason_code}"))
            self._register_failure()
            return

        self._connected = True
        self._connecting = False
        self._rapid_failures = 0
        logger.info("[MQTT] Connected to broker")

        topic = self._config.topic
        try:
            result, _mid = self._client.subscribe(topic, qos=0)
        except (OSError, ValueError) as e:
            self._report_error(TransportError(f"Failed to subscribe to topic: {e}"))
            return
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._report_error(TransportError(f"Failed to subscribe to topic: rc={result}"))

    def _handle_subscribe(self, generation: int, reason_codes) -> None:
        if generation != self._generation:
            return
        codes = list(reason_codes or [])
        if not codes:
            self._report_error(TransportError("Failed to subscribe: Empty response"))
            return
        if any(getattr(rc, "is_failure", False) for rc in codes):
            self._report_error(TransportError(f"Failed to subscribe: {codes[0]}"))
            return

        self._subscribed_topic = self._config.topic
        logger.info("[MQTT] Subscribed to %s", self._subscribed_topic)
        self._invoke(self._callbacks.on_connect)

    def _handle_connect_fail(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._connected = False
        self._report_error(TransportError("Connection failed"))
        self._register_failure()

    def _handle_disconnect(self, generation: int, reason_code) -> None:
        if generation != self._generation:
            return
        was_connected = self._connected
        self._connected = False
        self._subscribed_topic = None

        if self._intentional:
            return

        logger.warning("[MQTT] Disconnected unexpectedly (%s)", reason_code)
        # paho reintenta solo con el backoff configurado
        self._connecting = True
        self._connecting_since = time.monotonic()
        if was_connected:
            self._invoke(self._callbacks.on_disconnect)
        self._register_failure()

    def _handle_message(self, generation: int, topic: str, payload: bytes) -> None:
        if generation != self._generation:
            return
        message_id = generate_message_id(topic, payload)
        self._invoke(self._callbacks.on_message, payload, message_id)

    def _report_error(self, error: Exception) -> None:
        self._last_error = str(error)
        logger.warning("[MQTT] %s", error)
        self._invoke(self._callbacks.on_error, error)

    def _invoke(self, fn: Callable, *args) -> None:
        try:
            result = fn(*args)
        except Exception as e:
            logger.exception("[MQTT] Callback %s failed: %s", getattr(fn, "__name__", fn), e)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
