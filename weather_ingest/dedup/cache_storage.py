"""Almacenamiento durable del cache de timestamps procesados.

Equivalente al ``localStorage`` compartido por las pestañas: todos los
procesos de un mismo host pueden apuntar al mismo fichero.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List

import orjson

logger = logging.getLogger(__name__)


class CacheStorage:
    """Interfaz mínima: cargar, guardar y borrar la lista de ids."""

    def load(self) -> List[str]:
        raise NotImplementedError

    def save(self, keys: List[str]) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCacheStorage(CacheStorage):
    """Storage en memoria (tests y despliegues sin disco)."""

    def __init__(self, keys: List[str] | None = None):
        self._keys: List[str] = list(keys or [])

    def load(self) -> List[str]:
        return list(self._keys)

    def save(self, keys: List[str]) -> None:
        self._keys = list(keys)

    def clear(self) -> None:
        self._keys = []


class FileCacheStorage(CacheStorage):
    """Array JSON en disco, escrito con write-then-rename (atómico)."""

    def __init__(self, path: str | os.PathLike):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[str]:
        if not self._path.exists():
            return []
        try:
            data = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            # Cache corrupto: se arranca en frío, el store sigue siendo la última defensa.
            logger.warning("[DEDUP] Unreadable cache file %s: %s", self._path, e)
            return []
        if not isinstance(data, list):
            logger.warning("[DEDUP] Cache file %s is not a list, ignoring", self._path)
            return []
        return [str(k) for k in data]

    def save(self, keys: List[str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".dedup-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(keys))
            os.replace(tmp, self._path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
