"""Deduplicación de mensajes a nivel de conexión MQTT.

Filtra redeliveries del broker antes del decoder. El alcance es la
conexión actual: se resetea en cada reconexión y no se persiste.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Union

import orjson

from ..dedup.bounded_cache import BoundedFifoCache

logger = logging.getLogger(__name__)


def generate_message_id(topic: str, payload: Union[bytes, str]) -> str:
    """Genera el message id a partir de topic + timestamp del payload.

    Si el payload no trae ``timestamp`` (o no es JSON), usa un digest
    del contenido: una redelivery trae exactamente los mismos bytes.

    FORMATO: ``<topic>-<timestamp>`` o ``<topic>-MD5(payload)[:16]``
    """
    raw = payload.encode() if isinstance(payload, str) else payload
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        ts = data.get("timestamp")
        if ts is not None and ts != "":
            return f"{topic}-{ts}"

    return f"{topic}-{hashlib.md5(raw).hexdigest()[:16]}"


class MessageDeduplicator:
    """Filtro FIFO acotado de message ids (M≈500 por defecto).

    Uso:
        if dedup.seen(msg_id):
            return
        dedup.record(msg_id)
    """

    DEFAULT_MAX_SIZE = 500

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        self._cache = BoundedFifoCache(max_size)
        self._total_checked = 0
        self._duplicates_found = 0

    def seen(self, message_id: str) -> bool:
        """Indica si ``message_id`` ya se procesó en esta conexión."""
        self._total_checked += 1
        if message_id in self._cache:
            self._duplicates_found += 1
            logger.debug("[MQTT_DEDUP] duplicate msg_id=%s", message_id)
            return True
        return False

    def record(self, message_id: str) -> None:
        self._cache.add(message_id)

    def reset(self) -> None:
        """Vacía el filtro (nueva conexión)."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> dict:
        return {
            "size": len(self._cache),
            "max_size": self._cache.max_size,
            "total_checked": self._total_checked,
            "duplicates_found": self._duplicates_found,
        }
