from __future__ import annotations

from datetime import datetime

from deskrelay.entity import Entity
from deskrelay.participants import Participant


class ChatMessage(Entity):
    """A message exchanged between the two participants of a ticket."""

    ticket_id: str
    sender: Participant
    receiver: Participant
    content: str
    is_read: bool = False
    read_at: datetime | None = None

    def scope_key(self) -> str:
        return self.ticket_id

    def participant_ids(self) -> tuple[str, ...]:
        return (self.sender.id, self.receiver.id)
