"""Lease de un solo key para elegir el poller activo.

Claim-with-TTL, renovación y detección de staleness. Es best-effort, no
consenso: dos pollers solapados durante un ciclo se toleran (el dedup y
el existence-check absorben el trabajo redundante).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

DEFAULT_LEASE_KEY = "weather:active_poller"


@dataclass(frozen=True)
class LeaseInfo:
    holder: str
    claimed_at: float

    def is_stale(self, now: float, ttl: float) -> bool:
        return now - self.claimed_at > ttl

    def to_json(self) -> bytes:
        return orjson.dumps({"holder": self.holder, "claimed_at": self.claimed_at})

    @classmethod
    def from_json(cls, raw) -> Optional["LeaseInfo"]:
        try:
            data = orjson.loads(raw)
            return cls(holder=str(data["holder"]), claimed_at=float(data["claimed_at"]))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
            return None


class LeaseStore:
    """Celda compartida con el lease actual."""

    async def claim(self, key: str, holder: str, ttl: float) -> bool:
        """Reclama (o renueva) el lease si está libre, caducado o ya es nuestro."""
        raise NotImplementedError

    async def release(self, key: str, holder: str) -> None:
        raise NotImplementedError

    async def read(self, key: str) -> Optional[LeaseInfo]:
        raise NotImplementedError


class InMemoryLeaseStore(LeaseStore):
    """Lease en memoria. Compartir la instancia simula varios procesos."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._cells: Dict[str, LeaseInfo] = {}

    async def claim(self, key: str, holder: str, ttl: float) -> bool:
        now = self._clock()
        current = self._cells.get(key)
        if current is None or current.holder == holder or current.is_stale(now, ttl):
            self._cells[key] = LeaseInfo(holder=holder, claimed_at=now)
            return True
        return False

    async def release(self, key: str, holder: str) -> None:
        current = self._cells.get(key)
        if current is not None and current.holder == holder:
            del self._cells[key]

    async def read(self, key: str) -> Optional[LeaseInfo]:
        return self._cells.get(key)


class RedisLeaseStore(LeaseStore):
    """Lease en Redis con compare-and-swap (WATCH/MULTI).

    El key expira por sí solo a 2x TTL para no dejar basura si todos los
    procesos mueren.
    """

    def __init__(self, client: aioredis.Redis, clock: Clock = time.time):
        self._client = client
        self._clock = clock

    async def claim(self, key: str, holder: str, ttl: float) -> bool:
        now = self._clock()
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current = LeaseInfo.from_json(raw) if raw else None
                if current is not None and current.holder != holder and not current.is_stale(now, ttl):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, LeaseInfo(holder=holder, claimed_at=now).to_json(), px=int(ttl * 2000))
                await pipe.execute()
                return True
        except WatchError:
            # Otro proceso escribió entre el GET y el SET: pierde esta ronda.
            logger.debug("[LEASE] Lost race for %s", key)
            return False
        except (RedisError, OSError) as e:
            logger.warning("[LEASE] Claim failed key=%s: %s", key, e)
            return False

    async def release(self, key: str, holder: str) -> None:
        try:
            current = LeaseInfo.from_json(await self._client.get(key) or b"")
            if current is not None and current.holder == holder:
                await self._client.delete(key)
        except (RedisError, OSError) as e:
            logger.warning("[LEASE] Release failed key=%s: %s", key, e)

    async def read(self, key: str) -> Optional[LeaseInfo]:
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as e:
            logger.warning("[LEASE] Read failed key=%s: %s", key, e)
            return None
        return LeaseInfo.from_json(raw) if raw else None


class PollerLease:
    """Lease del rol "poller activo" para un holder concreto."""

    def __init__(
        self,
        store: LeaseStore,
        holder: str,
        ttl_seconds: float,
        key: str = DEFAULT_LEASE_KEY,
    ):
        self._store = store
        self._holder = holder
        self._ttl = ttl_seconds
        self._key = key
        self._held = False

    @property
    def holder(self) -> str:
        return self._holder

    @property
    def is_held(self) -> bool:
        return self._held

    async def try_acquire(self) -> bool:
        """Reclama o renueva. Actualiza ``is_held`` y loguea los cambios de rol."""
        acquired = await self._store.claim(self._key, self._holder, self._ttl)
        if acquired and not self._held:
            logger.info("[LEASE] %s is now the active poller", self._holder)
        elif not acquired and self._held:
            logger.info("[LEASE] %s lost the active poller lease", self._holder)
        self._held = acquired
        return acquired

    async def release(self) -> None:
        if self._held:
            await self._store.release(self._key, self._holder)
            self._held = False

    async def current(self) -> Optional[LeaseInfo]:
        return await self._store.read(self._key)
