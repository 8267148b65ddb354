"""Domain layer - modelos y errores canónicos."""

from .errors import (
    BulkDeleteError,
    DuplicateKeyError,
    MalformedPayload,
    StoreError,
    StorePersistError,
    TransportError,
    WeatherIngestError,
)
from .reading import (
    Reading,
    Station,
    TransportConfig,
    format_timestamp,
    normalize_timestamp,
    parse_timestamp,
)

__all__ = [
    "BulkDeleteError",
    "DuplicateKeyError",
    "MalformedPayload",
    "Reading",
    "Station",
    "StoreError",
    "StorePersistError",
    "TransportConfig",
    "TransportError",
    "WeatherIngestError",
    "format_timestamp",
    "normalize_timestamp",
    "parse_timestamp",
]
