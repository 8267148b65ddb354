"""Fan-out entre procesos usando Redis pub/sub."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .fanout import Handler, LocalFanout

logger = logging.getLogger(__name__)


class RedisFanout(LocalFanout):
    """Publica/recibe mensajes JSON en canales Redis.

    Responsabilidades:
    - Publicar eventos (timestamp procesado, clear) a los demás procesos
    - Escuchar los canales suscritos en una task de fondo y despachar
      a los handlers registrados
    - Si la escucha se cae, reabrir el pubsub cada ``retry_backoff`` y
      resuscribir todos los canales registrados
    """

    def __init__(
        self,
        client: aioredis.Redis,
        channel_prefix: str = "weather:",
        retry_backoff: float = 5.0,
    ):
        self._client = client
        self._prefix = channel_prefix
        self._handlers: Dict[str, List[Handler]] = {}
        self._pubsub = None
        self._subscribed: Set[str] = set()
        self._retry_backoff = retry_backoff
        self._listener: Optional[asyncio.Task] = None
        self._published = 0
        self._publish_errors = 0
        self._listener_errors = 0

    @classmethod
    def from_url(cls, url: str, channel_prefix: str = "weather:") -> "RedisFanout":
        client = aioredis.Redis.from_url(
            url,
            decode_responses=False,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        logger.info("[REDIS] Fan-out using %s", url.split("@")[-1])
        return cls(client, channel_prefix=channel_prefix)

    def _full(self, channel: str) -> str:
        return f"{self._prefix}{channel}"

    async def publish(self, channel: str, message: dict) -> bool:
        try:
            await self._client.publish(self._full(channel), orjson.dumps(message))
            self._published += 1
            return True
        except (RedisError, OSError) as e:
            self._publish_errors += 1
            logger.warning("[REDIS] Publish failed channel=%s: %s", channel, e)
            return False

    async def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)
        try:
            await self._open_pubsub()
        except (RedisError, OSError) as e:
            # Sin canal: cada proceso deduplica por su cuenta hasta que el listener resuscriba.
            logger.warning("[REDIS] Subscribe failed channel=%s: %s", channel, e)
        self._ensure_listener()

    def _ensure_listener(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="redis-fanout-listener")

    async def _open_pubsub(self) -> None:
        """Crea el pubsub si hace falta y suscribe los canales que falten."""
        if self._pubsub is None:
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            self._subscribed = set()
        missing = [ch for ch in self._handlers if ch not in self._subscribed]
        if missing:
            await self._pubsub.subscribe(*(self._full(ch) for ch in missing))
            self._subscribed.update(missing)
            logger.info("[REDIS] Subscribed to %s", ", ".join(missing))

    async def _reset_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        self._subscribed = set()
        if pubsub is not None:
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug("[REDIS] Error closing pubsub: %s", e)

    async def _listen(self) -> None:
        while True:
            await self._listen_once()
            await asyncio.sleep(self._retry_backoff)

    async def _listen_once(self) -> None:
        """Una sesión de escucha. Vuelve cuando la conexión se pierde."""
        try:
            await self._open_pubsub()
            async for msg in self._pubsub.listen():
                if msg.get("type") != "message":
                    continue
                self._dispatch(msg["channel"], msg["data"])
        except (RedisError, OSError) as e:
            self._listener_errors += 1
            logger.warning(
                "[REDIS] Listener lost (%s), per-process dedup until resubscribed in %.1fs",
                e,
                self._retry_backoff,
            )
        await self._reset_pubsub()

    def _dispatch(self, raw_channel, data) -> None:
        channel = raw_channel.decode() if isinstance(raw_channel, bytes) else str(raw_channel)
        if channel.startswith(self._prefix):
            channel = channel[len(self._prefix):]
        try:
            message = orjson.loads(data)
        except orjson.JSONDecodeError:
            logger.warning("[REDIS] Ignoring non-JSON message on %s", channel)
            return

        for handler in list(self._handlers.get(channel, ())):
            try:
                handler(message)
            except Exception as e:
                logger.exception("[REDIS] Handler failed channel=%s: %s", channel, e)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._reset_pubsub()
        self._handlers.clear()

    @property
    def stats(self) -> dict:
        return {
            "backend": "redis",
            "published": self._published,
            "publish_errors": self._publish_errors,
            "listener_errors": self._listener_errors,
            "channels": sorted(self._handlers),
        }
