from __future__ import annotations

from dataclasses import dataclass

from deskrelay.events.bus import EventBus
from deskrelay.events.listener import EntityCallbacks, EntityListener

from .models import Rating

RATINGS_TOPIC = "ratings"


@dataclass
class RatingCallbacks(EntityCallbacks[Rating]):
    pass


class RatingListener(EntityListener[Rating]):
    def __init__(self, bus: EventBus, callbacks: RatingCallbacks | None = None) -> None:
        super().__init__(bus, RATINGS_TOPIC, Rating, callbacks or RatingCallbacks())
