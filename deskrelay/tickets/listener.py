from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from deskrelay.events.bus import EventBus
from deskrelay.events.listener import EntityCallbacks, EntityListener

from .models import Ticket

TICKETS_TOPIC = "tickets"


@dataclass
class TicketCallbacks(EntityCallbacks[Ticket]):
    """Callbacks for ticket events; ``on_claimed`` falls back to ``on_updated``."""

    on_claimed: Callable[[Ticket], None] | None = None


class TicketListener(EntityListener[Ticket]):
    def __init__(self, bus: EventBus, callbacks: TicketCallbacks | None = None) -> None:
        super().__init__(bus, TICKETS_TOPIC, Ticket, callbacks or TicketCallbacks())
