"""Statistics for the MQTT receiver."""

from __future__ import annotations


class ReceiverStats:
    """Estadísticas del receptor MQTT."""

    def __init__(self):
        self.received = 0
        self.processed = 0
        self.duplicates = 0
        self.malformed = 0
        self.skipped = 0
        self.persist_failed = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} processed={self.processed} "
            f"duplicates={self.duplicates} malformed={self.malformed} "
            f"skipped={self.skipped} persist_failed={self.persist_failed}"
        )

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "received": self.received,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "malformed": self.malformed,
            "skipped": self.skipped,
            "persist_failed": self.persist_failed,
            "last_message_at": self.last_message_at,
        }
