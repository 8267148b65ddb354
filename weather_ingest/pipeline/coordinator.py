"""Coordinator de ingesta: decode → dedup → persist → ventana.

Estados por lectura:

    RECEIVED → DECODED → DEDUP_CHECKED → {SKIPPED | PERSIST_ATTEMPTED}
             → {PERSISTED | PERSIST_FAILED} → WINDOW_UPDATED

Política: at-least-once hacia memoria, exactly-once hacia el store.
- Duplicado en ventana / dedup / en vuelo → SKIPPED (sin escritura, sin
  mutar la ventana).
- Antes de insertar se consulta el store por timestamp (otro proceso pudo
  haberla insertado). Existe → se trata como persistida.
- ``DuplicateKeyError`` en el insert → igual que "ya existe".
- Cualquier otro error → PERSIST_FAILED, pero la lectura entra igual en la
  ventana. Queda pendiente y el siguiente ciclo de poll la reintenta.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from ..dedup.reading_dedup import ReadingDeduplicator
from ..domain.errors import DuplicateKeyError, StorePersistError
from ..domain.reading import Reading, format_timestamp
from ..state.window import RollingWindow
from ..store.base import ReadingStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReadingState(Enum):
    """Estado de procesamiento de una lectura."""
    RECEIVED = "received"
    DECODED = "decoded"
    DEDUP_CHECKED = "dedup_checked"
    SKIPPED = "skipped"
    PERSIST_ATTEMPTED = "persist_attempted"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    WINDOW_UPDATED = "window_updated"


@dataclass(frozen=True)
class IngestResult:
    """Resultado de ``accept``. Los errores de persistencia viajan aquí."""

    reading: Reading
    state: ReadingState
    inserted: bool = False
    already_stored: bool = False
    error: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.state is ReadingState.SKIPPED

    @property
    def persist_failed(self) -> bool:
        return self.error is not None


class IngestionCoordinator:
    """Orquesta el camino de una lectura hasta la ventana."""

    def __init__(
        self,
        store: ReadingStore,
        window: RollingWindow,
        dedup: ReadingDeduplicator,
        station_id: str,
        clock: Clock = _utcnow,
    ):
        self._store = store
        self._window = window
        self._dedup = dedup
        self._station_id = station_id
        self._clock = clock

        self._in_flight: Set[str] = set()
        # Lecturas en ventana que el store aún no tiene (PERSIST_FAILED)
        self._pending: Dict[str, Reading] = {}

        # Stats
        self._accepted = 0
        self._skipped = 0
        self._inserted = 0
        self._already_stored = 0
        self._persist_failed = 0
        self._from_poll = 0

        dedup.add_listener(self._on_sibling_event)

    @property
    def window(self) -> RollingWindow:
        return self._window

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def owns(self, timestamp: str) -> bool:
        """True si este proceso está procesando ``timestamp`` ahora mismo."""
        return timestamp in self._in_flight

    # ------------------------------------------------------------------
    # Camino en vivo
    # ------------------------------------------------------------------

    async def accept(self, reading: Reading) -> IngestResult:
        """Procesa una lectura decodificada.

        Nunca lanza por errores del store: ver ``IngestResult.error``.
        """
        ts = reading.timestamp

        skip_reason = self._skip_reason(ts)
        if skip_reason is not None:
            self._skipped += 1
            logger.debug("[COORD] Skipped timestamp=%s (%s)", ts, skip_reason)
            return IngestResult(reading, ReadingState.SKIPPED, skip_reason=skip_reason)

        self._in_flight.add(ts)
        try:
            inserted, already_stored, error = await self._persist(reading)
            if error is not None:
                self._pending[ts] = reading

            await self._update_window(reading)
        finally:
            self._in_flight.discard(ts)

        self._accepted += 1
        return IngestResult(
            reading,
            ReadingState.WINDOW_UPDATED,
            inserted=inserted,
            already_stored=already_stored,
            error=error,
        )

    def _skip_reason(self, timestamp: str) -> Optional[str]:
        if timestamp in self._in_flight:
            return "in_flight"
        if timestamp in self._window:
            return "in_window"
        if self._dedup.is_processed(timestamp):
            return "processed"
        return None

    async def _persist(self, reading: Reading):
        """PERSIST_ATTEMPTED → (inserted, already_stored, error)."""
        ts = reading.timestamp
        try:
            if await self._store.exists_by_timestamp(ts):
                self._already_stored += 1
                logger.debug("[COORD] timestamp=%s already in store", ts)
                return False, True, None

            await self._store.insert_reading(reading, self._station_id)
            self._inserted += 1
            return True, False, None

        except DuplicateKeyError:
            # Otro proceso ganó la carrera entre el exists y el insert.
            self._already_stored += 1
            return False, True, None

        except StorePersistError as e:
            self._persist_failed += 1
            logger.error("[COORD] Persist failed timestamp=%s: %s", ts, e)
            return False, False, str(e)

    async def _update_window(self, reading: Reading) -> None:
        """WINDOW_UPDATED: insert ordenado, evicción desde "ahora", marca dedup."""
        self._window.insert(reading)
        self._evict_expired()
        await self._dedup.mark_processed(reading.timestamp, reading.to_dict())

    def _evict_expired(self) -> None:
        """Aplica el horizonte a la ventana y descarta pendientes ya fuera de él."""
        now = self._clock()
        self._window.evict_expired(now)
        cutoff = format_timestamp(now - self._window.horizon)
        expired = [ts for ts in self._pending if ts < cutoff]
        for ts in expired:
            del self._pending[ts]
        if expired:
            logger.warning("[COORD] Dropped %d pending readings older than %s", len(expired), cutoff)

    # ------------------------------------------------------------------
    # Camino de poll
    # ------------------------------------------------------------------

    async def fetch_missed(self) -> List[Reading]:
        """Trae del store lo más nuevo que la lectura más reciente en ventana.

        Las filas del store ya están persistidas: solo se comprueba que no
        estén ya en ventana, se insertan y se marcan en el dedup.

        Raises:
            StorePersistError: si falla la consulta.
        """
        newest = self._window.newest_timestamp()
        if newest is None:
            since = format_timestamp(self._clock() - self._window.horizon)
            rows = await self._store.query_range(since, ascending=True, inclusive=True)
        else:
            rows = await self._store.query_range(newest, ascending=True)

        applied: List[Reading] = []
        for reading in rows:
            ts = reading.timestamp
            if ts in self._window or ts in self._in_flight:
                continue
            await self._update_window(reading)
            self._pending.pop(ts, None)
            applied.append(reading)

        if applied:
            self._from_poll += len(applied)
            logger.info("[COORD] Caught up %d missed readings", len(applied))
        return applied

    async def retry_pending(self) -> int:
        """Reintenta persistir lecturas que fallaron. Devuelve cuántas quedaron en el store."""
        if not self._pending:
            return 0

        done = 0
        for ts in sorted(self._pending):
            reading = self._pending[ts]
            self._in_flight.add(ts)
            try:
                _, _, error = await self._persist(reading)
            finally:
                self._in_flight.discard(ts)
            if error is not None:
                # Store aún caído: el resto esperará al siguiente ciclo.
                break
            del self._pending[ts]
            done += 1

        if done:
            logger.info("[COORD] Persisted %d pending readings (%d left)", done, len(self._pending))
        return done

    async def load_initial(self) -> int:
        """Carga inicial: últimas 24h del store a ventana + dedup."""
        since = format_timestamp(self._clock() - self._window.horizon)
        rows = await self._store.query_range(since, ascending=True, inclusive=True)
        for reading in rows:
            self._window.insert(reading)
        self._window.evict_expired(self._clock())
        await self._dedup.seed(r.timestamp for r in rows)
        logger.info("[COORD] Initial load: %d readings", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear_history(self) -> None:
        """Borra el histórico en el store y, solo si tuvo éxito, el estado local.

        Raises:
            BulkDeleteError: el store no borró; el estado local queda intacto.
        """
        await self._store.delete_all()
        self._window.clear()
        self._pending.clear()
        await self._dedup.clear()
        logger.info("[COORD] Historical data cleared")

    def _on_sibling_event(self, kind: str, timestamp: Optional[str], payload: Optional[dict]) -> None:
        """Eventos de otros procesos recibidos por el fan-out del dedup."""
        if kind == "clear":
            self._window.clear()
            self._pending.clear()
            return

        if kind != "processed" or not payload or timestamp in self._window:
            return
        try:
            reading = Reading(**payload)
        except TypeError as e:
            logger.debug("[COORD] Ignoring sibling payload for %s: %s", timestamp, e)
            return
        self._window.insert(reading)
        self._evict_expired()

    @property
    def stats(self) -> dict:
        return {
            "accepted": self._accepted,
            "skipped": self._skipped,
            "inserted": self._inserted,
            "already_stored": self._already_stored,
            "persist_failed": self._persist_failed,
            "pending": len(self._pending),
            "from_poll": self._from_poll,
            "in_flight": len(self._in_flight),
        }
