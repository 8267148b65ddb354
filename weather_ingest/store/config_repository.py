"""Repositorio de la configuración MQTT (tabla ``mqtt_config``)."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from common.config import Settings

from ..domain.errors import StorePersistError
from ..domain.reading import TransportConfig

logger = logging.getLogger(__name__)


def default_transport_config(settings: Settings) -> TransportConfig:
    """Config por defecto desde el entorno (cuando la tabla está vacía o falla)."""
    return TransportConfig(
        id="default",
        url=settings.mqtt_host,
        port=settings.mqtt_port,
        topic=settings.mqtt_topic,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        is_active=settings.mqtt_active,
    )


class MqttConfigRepository:
    """Carga/guarda la única fila de configuración del broker."""

    def __init__(self, engine: Engine, default: TransportConfig):
        self._engine = engine
        self._default = default

    async def load(self) -> TransportConfig:
        return await asyncio.to_thread(self._load)

    async def save(self, config: TransportConfig) -> TransportConfig:
        return await asyncio.to_thread(self._save, config)

    def _load(self) -> TransportConfig:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text(
                        "SELECT id, url, port, topic, username, password, is_active "
                        "FROM mqtt_config ORDER BY id LIMIT 1"
                    )
                ).mappings().first()
        except SQLAlchemyError as e:
            logger.warning("[CONFIG] Could not load mqtt_config, using defaults: %s", e)
            return self._default

        if row is None:
            logger.info("[CONFIG] No mqtt_config row, using defaults")
            return self._default

        return TransportConfig(
            id=str(row["id"]),
            url=row["url"],
            port=int(row["port"]),
            topic=row["topic"],
            # Credenciales vacías en BD → las del entorno.
            username=row["username"] or self._default.username,
            password=row["password"] or self._default.password,
            is_active=bool(row["is_active"]) if row["is_active"] is not None else True,
        )

    def _save(self, config: TransportConfig) -> TransportConfig:
        params = {
            "url": config.url,
            "port": config.port,
            "topic": config.topic,
            "username": config.username or None,
            "password": config.password or None,
            "is_active": config.is_active,
        }
        try:
            with self._engine.begin() as conn:
                if config.id and config.id != "default":
                    result = conn.execute(
                        text(
                            "UPDATE mqtt_config SET url = :url, port = :port, topic = :topic, "
                            "username = :username, password = :password, is_active = :is_active "
                            "WHERE id = :id"
                        ),
                        {**params, "id": int(config.id) if config.id.isdigit() else config.id},
                    )
                    if result.rowcount:
                        return config

                conn.execute(
                    text(
                        "INSERT INTO mqtt_config (url, port, topic, username, password, is_active) "
                        "VALUES (:url, :port, :topic, :username, :password, :is_active)"
                    ),
                    params,
                )
                new_id = conn.execute(text("SELECT MAX(id) FROM mqtt_config")).scalar()
        except SQLAlchemyError as e:
            raise StorePersistError(f"could not save mqtt_config: {e}") from e

        saved = TransportConfig(
            id=str(new_id) if new_id is not None else "default",
            url=config.url,
            port=config.port,
            topic=config.topic,
            username=config.username,
            password=config.password,
            is_active=config.is_active,
        )
        logger.info("[CONFIG] Saved mqtt_config id=%s", saved.id)
        return saved
