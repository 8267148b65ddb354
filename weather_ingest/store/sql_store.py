"""Store adapter SQL (SQLAlchemy) para ``weather_data``.

Las llamadas al engine son bloqueantes: se ejecutan en
``asyncio.to_thread`` para no bloquear el event loop.

Con un fan-out adjunto, cada insert se anuncia en el canal ``inserts`` y
los listeners reciben los inserts hechos por otros procesos.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..broadcast.fanout import LocalFanout
from ..domain.errors import BulkDeleteError, DuplicateKeyError, StorePersistError
from ..domain.reading import Reading
from .base import InsertListener, ReadingStore

logger = logging.getLogger(__name__)

INSERTS_CHANNEL = "inserts"

_COLUMNS = (
    "timestamp, temperature, humidity, pressure, radiation, "
    "wind_speed, wind_direction, rainfall"
)


class SqlReadingStore(ReadingStore):
    """Implementación sobre un engine SQLAlchemy."""

    def __init__(self, engine: Engine, table: str = "weather_data"):
        self._engine = engine
        self._table = table
        self._listeners: List[InsertListener] = []
        self._fanout: Optional[LocalFanout] = None
        self._instance_id: Optional[str] = None

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def exists_by_timestamp(self, timestamp: str) -> bool:
        return await asyncio.to_thread(self._exists, timestamp)

    async def insert_reading(self, reading: Reading, station_id: str) -> dict:
        row = await asyncio.to_thread(self._insert, reading, station_id)
        if self._fanout is not None:
            await self._fanout.publish(
                INSERTS_CHANNEL,
                {"type": "inserted", "origin": self._instance_id, "reading": reading.to_dict()},
            )
        return row

    async def query_range(
        self,
        from_ts: str,
        to_ts: Optional[str] = None,
        ascending: bool = True,
        inclusive: bool = False,
    ) -> List[Reading]:
        return await asyncio.to_thread(self._query_range, from_ts, to_ts, ascending, inclusive)

    async def delete_all(self) -> None:
        await asyncio.to_thread(self._delete_all)

    def subscribe_to_inserts(self, callback: InsertListener) -> None:
        self._listeners.append(callback)

    async def attach_fanout(self, fanout: LocalFanout, instance_id: str) -> None:
        """Publica los inserts propios y escucha los de otros procesos."""
        self._fanout = fanout
        self._instance_id = instance_id
        await fanout.subscribe(INSERTS_CHANNEL, self._on_insert_message)

    def _on_insert_message(self, message: dict) -> None:
        if message.get("type") != "inserted" or message.get("origin") == self._instance_id:
            return
        try:
            reading = Reading(**message["reading"])
        except (KeyError, TypeError) as e:
            logger.debug("[STORE] Ignoring insert notification: %s", e)
            return
        for listener in list(self._listeners):
            try:
                listener(reading)
            except Exception as e:
                logger.warning("[STORE] Insert listener failed: %s", e)

    # ------------------------------------------------------------------
    # Sync internals
    # ------------------------------------------------------------------

    def _exists(self, timestamp: str) -> bool:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text(f"SELECT 1 FROM {self._table} WHERE timestamp = :ts"),
                    {"ts": timestamp},
                ).first()
            return row is not None
        except SQLAlchemyError as e:
            raise StorePersistError(f"exists check failed: {e}") from e

    def _insert(self, reading: Reading, station_id: str) -> dict:
        params = reading.to_row(station_id)
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        f"""
                        INSERT INTO {self._table} ({_COLUMNS}, station_id)
                        VALUES (:timestamp, :temperature, :humidity, :pressure, :radiation,
                                :wind_speed, :wind_direction, :rainfall, :station_id)
                        """
                    ),
                    params,
                )
        except IntegrityError as e:
            raise DuplicateKeyError(f"timestamp {reading.timestamp} already stored") from e
        except SQLAlchemyError as e:
            raise StorePersistError(f"insert failed: {e}") from e

        logger.debug("[STORE] Inserted timestamp=%s station=%s", reading.timestamp, station_id)
        return params

    def _query_range(
        self,
        from_ts: str,
        to_ts: Optional[str],
        ascending: bool,
        inclusive: bool,
    ) -> List[Reading]:
        op = ">=" if inclusive else ">"
        sql = f"SELECT {_COLUMNS} FROM {self._table} WHERE timestamp {op} :from_ts"
        params = {"from_ts": from_ts}
        if to_ts is not None:
            sql += " AND timestamp <= :to_ts"
            params["to_ts"] = to_ts
        sql += " ORDER BY timestamp " + ("ASC" if ascending else "DESC")

        try:
            with self._engine.connect() as conn:
                rows = conn.execute(text(sql), params).mappings().all()
        except SQLAlchemyError as e:
            raise StorePersistError(f"range query failed: {e}") from e

        readings = []
        for row in rows:
            try:
                readings.append(Reading.from_row(row))
            except (ValueError, TypeError) as e:
                logger.warning("[STORE] Skipping unreadable row ts=%s: %s", row.get("timestamp"), e)
        return readings

    def _delete_all(self) -> None:
        # TRUNCATE es rápido pero no existe en todos los motores (SQLite).
        try:
            with self._engine.begin() as conn:
                conn.execute(text(f"TRUNCATE TABLE {self._table}"))
            logger.info("[STORE] Truncated %s", self._table)
            return
        except SQLAlchemyError as e:
            logger.info("[STORE] TRUNCATE not available (%s), falling back to DELETE", type(e).__name__)

        try:
            with self._engine.begin() as conn:
                result = conn.execute(text(f"DELETE FROM {self._table}"))
            logger.info("[STORE] Deleted %s rows from %s", result.rowcount, self._table)
        except SQLAlchemyError as e:
            raise BulkDeleteError(f"bulk delete failed: {e}") from e
