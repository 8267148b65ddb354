"""Deduplicación de lecturas por timestamp, compartida entre procesos.

Independiente de la deduplicación de transporte: aquí la clave es el
timestamp de la lectura y el alcance es el grupo de procesos que
observan el mismo feed.

Convergencia entre procesos:
- ``mark_processed`` persiste el cache y emite el timestamp por el fan-out
- los demás procesos lo añaden a su cache sin consultar el store y
  avisan a sus listeners (el coordinator inserta la lectura en su ventana)
- ``clear`` borra el storage y emite un evento de clear

Si el fan-out no está disponible se degrada a dedup por proceso; la
restricción UNIQUE del store sigue siendo la última defensa.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Iterable, List, Optional

from ..broadcast.fanout import LocalFanout
from .bounded_cache import BoundedFifoCache
from .cache_storage import CacheStorage, MemoryCacheStorage

logger = logging.getLogger(__name__)

DEDUP_CHANNEL = "dedup"

EVENT_PROCESSED = "processed"
EVENT_CLEAR = "clear"

# (tipo de evento, timestamp, payload de la lectura)
SiblingListener = Callable[[str, Optional[str], Optional[dict]], None]


class ReadingDeduplicator:
    """Cache acotado (N≈1000, FIFO) de timestamps ya aceptados."""

    DEFAULT_MAX_SIZE = 1000

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        fanout: Optional[LocalFanout] = None,
        max_size: int = DEFAULT_MAX_SIZE,
        instance_id: Optional[str] = None,
        channel: str = DEDUP_CHANNEL,
    ):
        self._cache = BoundedFifoCache(max_size)
        self._storage = storage or MemoryCacheStorage()
        self._fanout = fanout
        self._channel = channel
        self._instance_id = instance_id or uuid.uuid4().hex[:12]
        self._started = False
        self._listeners: List[SiblingListener] = []

        # Stats
        self._marked = 0
        self._remote_marked = 0
        self._persist_errors = 0
        self._broadcast_errors = 0

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def start(self) -> None:
        """Carga el cache durable (recortado al cap) y se suscribe al fan-out."""
        if self._started:
            return
        try:
            keys = await asyncio.to_thread(self._storage.load)
        except Exception as e:
            logger.warning("[DEDUP] Could not load durable cache: %s", e)
            keys = []

        self._cache.extend(keys[-self._cache.max_size:])
        logger.info("[DEDUP] Loaded %d processed timestamps", len(self._cache))

        if self._fanout is not None:
            try:
                await self._fanout.subscribe(self._channel, self._on_broadcast)
            except Exception as e:
                logger.warning("[DEDUP] Broadcast unavailable, per-process dedup only: %s", e)
        self._started = True

    def is_processed(self, timestamp: str) -> bool:
        return timestamp in self._cache

    def add_listener(self, listener: SiblingListener) -> None:
        """Registra un callback para eventos recibidos de otros procesos."""
        self._listeners.append(listener)

    async def mark_processed(self, timestamp: str, reading: Optional[dict] = None) -> bool:
        """Marca ``timestamp`` como procesado. Idempotente.

        ``reading`` viaja en el broadcast para que los hermanos actualicen
        su ventana sin leer el store.

        Returns:
            True si era nuevo en este proceso.
        """
        if not self._cache.add(timestamp):
            return False
        self._marked += 1
        await self._persist()
        message = {"type": EVENT_PROCESSED, "timestamp": timestamp}
        if reading is not None:
            message["reading"] = reading
        await self._broadcast(message)
        return True

    async def seed(self, timestamps: Iterable[str]) -> int:
        """Añade timestamps conocidos (carga inicial) con una sola escritura."""
        added = self._cache.extend(timestamps)
        if added:
            await self._persist()
        return added

    async def clear(self) -> None:
        """Vacía cache local y durable, y pide a los hermanos que hagan lo mismo."""
        self._cache.clear()
        try:
            await asyncio.to_thread(self._storage.clear)
        except Exception as e:
            self._persist_errors += 1
            logger.warning("[DEDUP] Could not wipe durable cache: %s", e)
        await self._broadcast({"type": EVENT_CLEAR})
        logger.info("[DEDUP] Cache cleared")

    def _on_broadcast(self, message: dict) -> None:
        if message.get("origin") == self._instance_id:
            return

        kind = message.get("type")
        if kind == EVENT_PROCESSED:
            ts = message.get("timestamp")
            if not isinstance(ts, str):
                return
            if self._cache.add(ts):
                self._remote_marked += 1
            self._notify(kind, ts, message.get("reading"))
        elif kind == EVENT_CLEAR:
            self._cache.clear()
            logger.info("[DEDUP] Cache cleared by sibling %s", message.get("origin"))
            self._notify(kind, None, None)
        else:
            logger.debug("[DEDUP] Unknown broadcast event: %s", kind)

    def _notify(self, kind: str, timestamp: Optional[str], reading: Optional[dict]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, timestamp, reading)
            except Exception as e:
                logger.warning("[DEDUP] Listener failed on %s: %s", kind, e)

    async def _persist(self) -> None:
        try:
            await asyncio.to_thread(self._storage.save, self._cache.to_list())
        except Exception as e:
            self._persist_errors += 1
            logger.warning("[DEDUP] Could not persist cache: %s", e)

    async def _broadcast(self, message: dict) -> None:
        if self._fanout is None:
            return
        message["origin"] = self._instance_id
        ok = await self._fanout.publish(self._channel, message)
        if not ok:
            self._broadcast_errors += 1

    def __len__(self) -> int:
        return len(self._cache)

    def snapshot(self) -> list:
        return self._cache.to_list()

    @property
    def stats(self) -> dict:
        return {
            "size": len(self._cache),
            "max_size": self._cache.max_size,
            "marked": self._marked,
            "remote_marked": self._remote_marked,
            "persist_errors": self._persist_errors,
            "broadcast_errors": self._broadcast_errors,
        }
