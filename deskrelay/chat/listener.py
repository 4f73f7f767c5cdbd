from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from deskrelay.events.bus import EventBus
from deskrelay.events.listener import EntityCallbacks, EntityListener
from deskrelay.participants import Participant

from .models import ChatMessage

CHAT_TOPIC = "chat_messages"


@dataclass
class ChatCallbacks(EntityCallbacks[ChatMessage]):
    """Message callbacks plus ``on_typing(ticket_id, participant)``."""

    on_typing: Callable[[str, Participant], None] | None = None


class ChatListener(EntityListener[ChatMessage]):
    def __init__(self, bus: EventBus, callbacks: ChatCallbacks | None = None) -> None:
        super().__init__(bus, CHAT_TOPIC, ChatMessage, callbacks or ChatCallbacks())
