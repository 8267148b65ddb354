"""Dedup layer - cache FIFO acotado y dedup de lecturas entre procesos."""

from .bounded_cache import BoundedFifoCache
from .cache_storage import CacheStorage, FileCacheStorage, MemoryCacheStorage
from .reading_dedup import ReadingDeduplicator

__all__ = [
    "BoundedFifoCache",
    "CacheStorage",
    "FileCacheStorage",
    "MemoryCacheStorage",
    "ReadingDeduplicator",
]
