"""Contrato del store adapter (frontera de persistencia)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..domain.reading import Reading

InsertListener = Callable[[Reading], None]


class ReadingStore(ABC):
    """Persistencia de lecturas.

    Todas las operaciones son asíncronas (puntos de suspensión del
    coordinator). Errores:
    - ``insert_reading``: DuplicateKeyError | StorePersistError
    - ``delete_all``: BulkDeleteError
    - resto: StorePersistError
    """

    @abstractmethod
    async def exists_by_timestamp(self, timestamp: str) -> bool:
        ...

    @abstractmethod
    async def insert_reading(self, reading: Reading, station_id: str) -> dict:
        """Inserta y devuelve la fila creada."""

    @abstractmethod
    async def query_range(
        self,
        from_ts: str,
        to_ts: Optional[str] = None,
        ascending: bool = True,
        inclusive: bool = False,
    ) -> List[Reading]:
        """Lecturas con ``timestamp > from_ts`` (``>=`` si inclusive) y ``<= to_ts``."""

    @abstractmethod
    async def delete_all(self) -> None:
        ...

    def subscribe_to_inserts(self, callback: InsertListener) -> None:
        """Notificación opcional de inserts de otros procesos (pista para un fetch inmediato)."""
        return None
