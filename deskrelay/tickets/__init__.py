from .listener import TICKETS_TOPIC, TicketCallbacks, TicketListener
from .manager import TicketManager, is_claim
from .models import Ticket
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "TICKETS_TOPIC",
    "Ticket",
    "TicketCallbacks",
    "TicketListener",
    "TicketManager",
    "TicketStateMachine",
    "TicketStatus",
    "is_claim",
]
