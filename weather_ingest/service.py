"""Composition root del pipeline de ingesta.

Construye y cablea, una vez por proceso:
    engine → schema → store / config repo
    fan-out + lease store (Redis si hay REDIS_URL, si no en proceso)
    dedup de lecturas → ventana → coordinator → poller
    transport client → message handler

Las acciones de operador (reconnect, cambio de config, borrar histórico)
entran por aquí; la API HTTP solo delega.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine

from .broadcast import InProcessFanout, LocalFanout, RedisFanout
from .coordination import InMemoryLeaseStore, LeaseStore, PollerLease, RedisLeaseStore
from .dedup import FileCacheStorage, ReadingDeduplicator
from .domain.errors import StoreError
from .domain.reading import TransportConfig
from .mqtt import (
    MessageDeduplicator,
    MessageHandler,
    MQTTConnectionManager,
    TransportCallbacks,
    load_or_create_client_id,
)
from .pipeline import ActivePoller, IngestionCoordinator
from .state import RollingWindow
from .store import MqttConfigRepository, SqlReadingStore, default_transport_config, ensure_schema

logger = logging.getLogger(__name__)


class WeatherIngestService:
    """Un observador del feed de la estación (un proceso)."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        fanout: Optional[LocalFanout] = None,
        lease_store: Optional[LeaseStore] = None,
        transport: Optional[MQTTConnectionManager] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.instance_id = uuid.uuid4().hex[:12]
        self.engine = engine or get_engine(s)
        self.store = SqlReadingStore(self.engine)
        self.config_repo = MqttConfigRepository(self.engine, default_transport_config(s))

        self._redis: Optional[aioredis.Redis] = None
        self._fanout = fanout
        self._lease_store = lease_store

        self.window = RollingWindow(horizon=timedelta(hours=s.window_hours))

        # Se completan en start() (dependen de Redis).
        self.dedup: Optional[ReadingDeduplicator] = None
        self.coordinator: Optional[IngestionCoordinator] = None
        self.poller: Optional[ActivePoller] = None
        self.handler: Optional[MessageHandler] = None

        self.transport = transport or MQTTConnectionManager(
            client_id=load_or_create_client_id(s.mqtt_client_id_file),
            reconnect_backoff=s.reconnect_backoff_seconds,
            keepalive_interval=s.keepalive_seconds,
            max_rapid_retries=s.max_rapid_retries,
            connect_timeout=s.connect_timeout_seconds,
        )
        self.transport_config: Optional[TransportConfig] = None
        self.transport_error: Optional[str] = None
        self._started = False

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        s = self.settings
        logger.info("[SERVICE] Starting instance=%s station=%s", self.instance_id, s.station_id)

        await asyncio.to_thread(ensure_schema, self.engine)
        await self._setup_coordination()
        await self.store.attach_fanout(self._fanout, self.instance_id)

        self.dedup = ReadingDeduplicator(
            storage=FileCacheStorage(s.dedup_cache_file),
            fanout=self._fanout,
            max_size=s.dedup_cache_size,
            instance_id=self.instance_id,
        )
        await self.dedup.start()

        self.coordinator = IngestionCoordinator(
            store=self.store,
            window=self.window,
            dedup=self.dedup,
            station_id=s.station_id,
        )
        try:
            await self.coordinator.load_initial()
        except StoreError as e:
            logger.warning("[SERVICE] Initial load failed, starting with empty window: %s", e)

        lease = PollerLease(self._lease_store, self.instance_id, s.lease_ttl_seconds)
        self.poller = ActivePoller(
            self.coordinator,
            lease,
            poll_interval=s.poll_interval_seconds,
            check_interval=s.lease_check_seconds,
        )
        self.store.subscribe_to_inserts(self._on_store_insert)
        self.poller.start()

        self.handler = MessageHandler(
            self.coordinator,
            MessageDeduplicator(max_size=s.message_dedup_cache_size),
        )
        self.transport_config = await self.config_repo.load()
        self._connect_transport(self.transport_config)

        self._started = True
        logger.info("[SERVICE] Started")

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("[SERVICE] Stopping")
        self.transport.disconnect()
        if self.poller is not None:
            await self.poller.stop()
        await self._fanout.close()
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (RedisError, OSError) as e:
                logger.warning("[REDIS] Close error: %s", e)
            self._redis = None
        self._started = False
        logger.info("[SERVICE] Stopped")

    async def _setup_coordination(self) -> None:
        """Redis compartido para fan-out + lease; sin Redis, primitivas en proceso."""
        url = self.settings.redis_url
        if url and (self._fanout is None or self._lease_store is None):
            client = aioredis.Redis.from_url(
                url,
                decode_responses=False,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            try:
                await client.ping()
                self._redis = client
                logger.info("[REDIS] Connected: %s", url.split("@")[-1])
            except (RedisError, OSError) as e:
                logger.warning("[REDIS] Connection failed, per-process coordination only: %s", e)
                await client.aclose()

        if self._fanout is None:
            self._fanout = RedisFanout(self._redis) if self._redis else InProcessFanout()
        if self._lease_store is None:
            self._lease_store = RedisLeaseStore(self._redis) if self._redis else InMemoryLeaseStore()

    def _on_store_insert(self, reading) -> None:
        """Insert de otro proceso: poll inmediato si la lectura aún no está aquí."""
        ts = reading.timestamp
        if ts in self.window or self.coordinator.owns(ts):
            return
        self.poller.trigger()

    # ------------------------------------------------------------------
    # Transporte
    # ------------------------------------------------------------------

    def _callbacks(self) -> TransportCallbacks:
        handler = self.handler

        def on_connect() -> None:
            self.transport_error = None
            handler.on_connect()

        def on_error(exc: Exception) -> None:
            self.transport_error = str(exc)
            handler.on_error(exc)

        return TransportCallbacks(
            on_connect=on_connect,
            on_disconnect=handler.on_disconnect,
            on_error=on_error,
            on_message=handler.on_message,
        )

    def _connect_transport(self, config: TransportConfig) -> None:
        self.transport_error = None
        self.transport.connect(config, self._callbacks())

    # ------------------------------------------------------------------
    # Acciones de operador
    # ------------------------------------------------------------------

    async def reconnect(self) -> None:
        """Reconexión manual con la config vigente."""
        config = self.transport_config or await self.config_repo.load()
        logger.info("[SERVICE] Manual reconnect requested")
        self.transport.disconnect()
        self._connect_transport(config)

    async def update_transport_config(self, config: TransportConfig) -> TransportConfig:
        """Guarda la config y reconecta (o desconecta si quedó inactiva).

        Raises:
            StorePersistError: no se pudo guardar; la conexión actual sigue igual.
        """
        saved = await self.config_repo.save(config)
        self.transport_config = saved
        logger.info("[SERVICE] Transport config updated: %s", saved.redacted())
        self._connect_transport(saved)
        return saved

    async def clear_historical_data(self) -> None:
        """Borra store + ventana + dedup.

        Raises:
            BulkDeleteError: el store no borró; nada local se toca.
        """
        await self.coordinator.clear_history()

    # ------------------------------------------------------------------
    # Vistas
    # ------------------------------------------------------------------

    def status(self) -> dict:
        view = self.window.view()
        return {
            "instance_id": self.instance_id,
            "station_id": self.settings.station_id,
            "transport": self.transport.status(),
            "transport_config": self.transport_config.redacted() if self.transport_config else None,
            "transport_error": self.transport_error,
            "window": {
                "size": len(view.readings),
                "last_updated": view.last_updated,
            },
            "receiver": self.handler.stats.to_dict() if self.handler else None,
            "coordinator": self.coordinator.stats if self.coordinator else None,
            "dedup": self.dedup.stats if self.dedup else None,
            "poller": self.poller.stats if self.poller else None,
        }
