"""Message handling for the MQTT receiver.

Flujo por mensaje: dedup de transporte → decode → coordinator.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Union

from ..domain.errors import MalformedPayload
from ..pipeline.coordinator import IngestionCoordinator, IngestResult
from .decoder import decode_payload
from .message_dedup import MessageDeduplicator
from .receiver_stats import ReceiverStats

logger = logging.getLogger(__name__)


class MessageHandler:
    """Conecta los callbacks del transporte con el coordinator."""

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        message_dedup: Optional[MessageDeduplicator] = None,
        stats: Optional[ReceiverStats] = None,
    ):
        self._coordinator = coordinator
        self._message_dedup = message_dedup or MessageDeduplicator()
        self.stats = stats or ReceiverStats()

    @property
    def message_dedup(self) -> MessageDeduplicator:
        return self._message_dedup

    def on_connect(self) -> None:
        """Conexión (re)establecida: el dedup de mensajes es por conexión."""
        self._message_dedup.reset()
        logger.info("[MQTT] Connected, message dedup reset")

    def on_disconnect(self) -> None:
        logger.warning("[MQTT] Disconnected (%s)", self.stats)

    def on_error(self, exc: BaseException) -> None:
        logger.error("[MQTT] Transport error: %s", exc)

    async def on_message(self, payload: Union[bytes, str], message_id: str) -> Optional[IngestResult]:
        """Procesa un mensaje recibido. None si se descartó antes del coordinator."""
        stats = self.stats
        stats.received += 1
        stats.last_message_at = time.time()

        if self._message_dedup.seen(message_id):
            stats.duplicates += 1
            logger.debug("[MQTT] Duplicate message_id=%s", message_id)
            return None
        self._message_dedup.record(message_id)

        try:
            reading = decode_payload(payload)
        except MalformedPayload as e:
            stats.malformed += 1
            logger.warning("[MQTT] Malformed payload (message_id=%s): %s", message_id, e)
            return None

        result = await self._coordinator.accept(reading)

        if result.skipped:
            stats.skipped += 1
            return result
        if result.persist_failed:
            stats.persist_failed += 1

        stats.processed += 1
        if stats.processed % 100 == 0:
            logger.info("[MQTT] %s", stats)
        return result
