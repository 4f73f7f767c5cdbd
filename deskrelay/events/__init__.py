"""In-process and cross-process change notification fabric."""

from .bus import EventBus, InProcessEventBus, SharedKeyEventBus
from .envelope import ChangeEnvelope, EventType, decode_envelope, encode_envelope
from .listener import EntityListener

__all__ = [
    "ChangeEnvelope",
    "EntityListener",
    "EventBus",
    "EventType",
    "InProcessEventBus",
    "SharedKeyEventBus",
    "decode_envelope",
    "encode_envelope",
]
