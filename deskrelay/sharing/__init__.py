from .listener import (
    SESSIONS_TOPIC,
    ScreenShareSessionCallbacks,
    ScreenShareSessionListener,
    ShareRequestCallbacks,
    ShareRequestListener,
    requests_topic,
)
from .manager import DEFAULT_TTL_SECONDS, ShareRequestManager
from .models import ScreenShareSession, SessionStatus, ShareKind, ShareRequest, ShareRequestStatus

__all__ = [
    "DEFAULT_TTL_SECONDS",
    "SESSIONS_TOPIC",
    "ScreenShareSession",
    "ScreenShareSessionCallbacks",
    "ScreenShareSessionListener",
    "SessionStatus",
    "ShareKind",
    "ShareRequest",
    "ShareRequestCallbacks",
    "ShareRequestListener",
    "ShareRequestManager",
    "ShareRequestStatus",
    "requests_topic",
]
