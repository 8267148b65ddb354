"""Cache FIFO acotado de identificadores ya vistos."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, Iterator, List, Set


class BoundedFifoCache:
    """Conjunto acotado con expulsión FIFO.

    Mantiene dos estructuras con exactamente los mismos elementos:
    - ``_order``: secuencia ordenada (más antiguo primero)
    - ``_members``: set para membership O(1)

    Insertar más allá de ``max_size`` expulsa primero el identificador
    más antiguo.
    """

    def __init__(self, max_size: int):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._order: Deque[str] = deque()
        self._members: Set[str] = set()

    def __contains__(self, key: object) -> bool:
        return key in self._members

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    @property
    def max_size(self) -> int:
        return self._max_size

    def add(self, key: str) -> bool:
        """Añade ``key``. Devuelve False si ya estaba (no cambia el orden)."""
        if key in self._members:
            return False
        self._order.append(key)
        self._members.add(key)
        while len(self._order) > self._max_size:
            evicted = self._order.popleft()
            self._members.discard(evicted)
        return True

    def extend(self, keys: Iterable[str]) -> int:
        """Añade varias claves en orden; devuelve cuántas eran nuevas."""
        return sum(1 for key in keys if self.add(key))

    def clear(self) -> None:
        self._order.clear()
        self._members.clear()

    def to_list(self) -> List[str]:
        return list(self._order)
