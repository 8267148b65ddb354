"""Jerarquía de errores del core de ingesta."""

from __future__ import annotations


class WeatherIngestError(Exception):
    """Base de todos los errores del paquete."""


class TransportError(WeatherIngestError):
    """Fallo de conexión con el broker (rechazo, auth, cierre inesperado).

    Siempre se reintenta con backoff; nunca es fatal.
    """


class MalformedPayload(WeatherIngestError):
    """Payload sin campos requeridos o con valores no numéricos."""


class StoreError(WeatherIngestError):
    """Base de errores del store adapter."""


class DuplicateKeyError(StoreError):
    """La fila ya existe (violación de unicidad). Se trata como éxito."""


class StorePersistError(StoreError):
    """Cualquier otro fallo de escritura/lectura en el store."""


class BulkDeleteError(StoreError):
    """Falló el borrado masivo del histórico."""
