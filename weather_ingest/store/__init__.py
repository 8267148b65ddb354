"""Store layer - frontera de persistencia."""

from .base import ReadingStore
from .config_repository import MqttConfigRepository, default_transport_config
from .schema import ensure_schema
from .sql_store import SqlReadingStore

__all__ = [
    "MqttConfigRepository",
    "ReadingStore",
    "SqlReadingStore",
    "default_transport_config",
    "ensure_schema",
]
