"""Fan-out local entre observadores (procesos/pestañas) del mismo feed."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[dict], None]


class LocalFanout:
    """Interfaz pub/sub mínima.

    ``publish`` nunca lanza: si el canal no está disponible devuelve False
    y el caller degrada a comportamiento por-proceso.
    """

    async def publish(self, channel: str, message: dict) -> bool:
        raise NotImplementedError

    async def subscribe(self, channel: str, handler: Handler) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InProcessFanout(LocalFanout):
    """Fan-out dentro del mismo proceso.

    Entrega a todos los handlers registrados en esta instancia (incluido el
    emisor; el filtrado por origen lo hace quien recibe). Con un único
    observador equivale a un no-op.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._published = 0

    async def publish(self, channel: str, message: dict) -> bool:
        self._published += 1
        for handler in list(self._handlers.get(channel, ())):
            try:
                handler(dict(message))
            except Exception as e:
                logger.exception("[FANOUT] Handler failed channel=%s: %s", channel, e)
        return True

    async def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    async def close(self) -> None:
        self._handlers.clear()

    @property
    def stats(self) -> dict:
        return {
            "backend": "in_process",
            "published": self._published,
            "channels": {ch: len(hs) for ch, hs in self._handlers.items()},
        }
