"""Pipeline layer - coordinator de ingesta y poller activo."""

from .coordinator import IngestionCoordinator, IngestResult, ReadingState
from .poller import ActivePoller

__all__ = ["ActivePoller", "IngestResult", "IngestionCoordinator", "ReadingState"]
