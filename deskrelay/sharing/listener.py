from __future__ import annotations

from dataclasses import dataclass

from deskrelay.events.bus import EventBus
from deskrelay.events.listener import EntityCallbacks, EntityListener

from .models import ScreenShareSession, ShareKind, ShareRequest

SESSIONS_TOPIC = "screen_share_sessions"


def requests_topic(kind: ShareKind) -> str:
    return f"{kind.value}_share_requests"


@dataclass
class ShareRequestCallbacks(EntityCallbacks[ShareRequest]):
    pass


@dataclass
class ScreenShareSessionCallbacks(EntityCallbacks[ScreenShareSession]):
    pass


class ShareRequestListener(EntityListener[ShareRequest]):
    def __init__(self, bus: EventBus, kind: ShareKind, callbacks: ShareRequestCallbacks | None = None) -> None:
        super().__init__(bus, requests_topic(kind), ShareRequest, callbacks or ShareRequestCallbacks())


class ScreenShareSessionListener(EntityListener[ScreenShareSession]):
    def __init__(self, bus: EventBus, callbacks: ScreenShareSessionCallbacks | None = None) -> None:
        super().__init__(bus, SESSIONS_TOPIC, ScreenShareSession, callbacks or ScreenShareSessionCallbacks())
