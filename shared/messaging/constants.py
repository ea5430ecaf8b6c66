"""Span names and attribute keys for the messaging semantic conventions."""
from __future__ import annotations

from enum import Enum

MESSAGING_SYSTEM = "messaging.system"
MESSAGING_DESTINATION_KIND = "messaging.destination_kind"
MESSAGING_DESTINATION = "messaging.destination"
MESSAGING_MESSAGE_ID = "messaging.message_id"
MESSAGING_OUTCOME = "messaging.outcome"
MESSAGE_BODY = "message"

DESTINATION_KIND_QUEUE = "queue"


def send_span_name(queue_name: str) -> str:
    return f"{queue_name} send"


def receive_span_name(queue_name: str) -> str:
    return f"{queue_name} receive"


class TransportType(str, Enum):
    AMQP = "amqp"
    AMQP_WEBSOCKETS = "amqp_websockets"
