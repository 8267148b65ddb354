"""MQTT layer - transport client, decoder y dedup de mensajes."""

from .client import MQTTConnectionManager, TransportCallbacks, load_or_create_client_id
from .decoder import WeatherPayload, decode_payload
from .message_dedup import MessageDeduplicator, generate_message_id
from .message_handler import MessageHandler
from .receiver_stats import ReceiverStats

__all__ = [
    "MQTTConnectionManager",
    "MessageDeduplicator",
    "MessageHandler",
    "ReceiverStats",
    "TransportCallbacks",
    "WeatherPayload",
    "decode_payload",
    "generate_message_id",
    "load_or_create_client_id",
]
