"""Adapter modules for external integrations."""

from .cloud import CloudQueueClient
from .push import PushChannel, decode_command_status
from .serial import PortInfo, SerialTransport, list_candidates

__all__ = [
    "CloudQueueClient",
    "PortInfo",
    "PushChannel",
    "SerialTransport",
    "decode_command_status",
    "list_candidates",
]
