from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from ..domain.reading import Reading, format_timestamp

logger = logging.getLogger(__name__)

WindowListener = Callable[[Reading], None]

Instant = Union[str, datetime]


def _as_key(value: Instant) -> str:
    return value if isinstance(value, str) else format_timestamp(value)


@dataclass(frozen=True)
class WindowSnapshot:
    """Vista consistente de la ventana para los consumidores."""

    readings: Tuple[Reading, ...]
    current: Optional[Reading]
    last_updated: Optional[str]


class RollingWindow:
    """Ventana en memoria de las últimas lecturas (24h por defecto).

    - Ordenada ascendente por timestamp en todo momento; el insert busca
      la posición (bisect) en vez de append+sort. El caso típico (lectura
      más nueva que la cola) es un append.
    - ``timestamp`` es único dentro de la ventana.
    - ``clear()`` resetea ventana, lectura actual y last_updated juntos.
    """

    def __init__(self, horizon: timedelta = timedelta(hours=24)):
        self._horizon = horizon
        self._readings: List[Reading] = []
        # Claves paralelas para bisect (ISO canónico: orden lexicográfico == temporal)
        self._keys: List[str] = []
        self._current: Optional[Reading] = None
        self._last_updated: Optional[str] = None
        self._listeners: List[WindowListener] = []

    @property
    def horizon(self) -> timedelta:
        return self._horizon

    def __len__(self) -> int:
        return len(self._readings)

    def __contains__(self, timestamp: object) -> bool:
        if not isinstance(timestamp, str):
            return False
        i = bisect.bisect_left(self._keys, timestamp)
        return i < len(self._keys) and self._keys[i] == timestamp

    def insert(self, reading: Reading) -> bool:
        """Inserta en su posición ordenada. False si el timestamp ya estaba."""
        ts = reading.timestamp
        if not self._keys or self._keys[-1] < ts:
            self._keys.append(ts)
            self._readings.append(reading)
        else:
            i = bisect.bisect_left(self._keys, ts)
            if i < len(self._keys) and self._keys[i] == ts:
                return False
            self._keys.insert(i, ts)
            self._readings.insert(i, reading)

        self._refresh_current()

        for listener in list(self._listeners):
            try:
                listener(reading)
            except Exception as e:
                logger.warning("[WINDOW] Listener failed: %s", e)
        return True

    def evict_older_than(self, cutoff: Instant) -> int:
        """Elimina lecturas con timestamp < cutoff. Devuelve cuántas."""
        i = bisect.bisect_left(self._keys, _as_key(cutoff))
        if i:
            del self._keys[:i]
            del self._readings[:i]
            self._refresh_current()
            logger.debug("[WINDOW] Evicted %d readings older than %s", i, cutoff)
        return i

    def _refresh_current(self) -> None:
        newest = self._readings[-1] if self._readings else None
        self._current = newest
        self._last_updated = newest.timestamp if newest else None

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Aplica el horizonte medido desde ``now`` (no desde la lectura más nueva)."""
        now = now or datetime.now(timezone.utc)
        return self.evict_older_than(now - self._horizon)

    def snapshot(self) -> Tuple[Reading, ...]:
        return tuple(self._readings)

    def view(self) -> WindowSnapshot:
        return WindowSnapshot(
            readings=tuple(self._readings),
            current=self._current,
            last_updated=self._last_updated,
        )

    def between(self, start: Instant, end: Instant) -> List[Reading]:
        """Lecturas con start <= timestamp < end."""
        lo = bisect.bisect_left(self._keys, _as_key(start))
        hi = bisect.bisect_left(self._keys, _as_key(end))
        return self._readings[lo:hi]

    def current(self) -> Optional[Reading]:
        return self._current

    def last_updated(self) -> Optional[str]:
        return self._last_updated

    def newest_timestamp(self) -> Optional[str]:
        return self._keys[-1] if self._keys else None

    def clear(self) -> None:
        self._readings = []
        self._keys = []
        self._current = None
        self._last_updated = None
        logger.info("[WINDOW] Cleared")

    def subscribe(self, listener: WindowListener) -> None:
        """Registra un consumidor notificado tras cada insert."""
        self._listeners.append(listener)
