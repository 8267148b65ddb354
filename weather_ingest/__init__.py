"""Weather station telemetry ingestion core."""

__version__ = "0.1.0"
