"""Broadcast layer - fan-out local entre observadores."""

from .fanout import InProcessFanout, LocalFanout
from .redis_fanout import RedisFanout

__all__ = ["InProcessFanout", "LocalFanout", "RedisFanout"]
