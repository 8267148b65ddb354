from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings, get_settings


logger = logging.getLogger(__name__)


def _redact(url: str) -> str:
    # No loggear credenciales: solo host/db.
    return url.split("@")[-1]


def get_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    url = settings.database_url

    logger.info("[DB] Crear engine url=%s", _redact(url))

    kwargs = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite"):
        # El store se usa desde asyncio.to_thread: varios hilos comparten el engine.
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = create_engine(url, **kwargs)

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return engine
