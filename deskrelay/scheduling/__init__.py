from .clock import Clock, utc_now
from .expiry import ExpiryScheduler, TimerToken
from .typing import TypingIndicator, TypingThrottle

__all__ = ["Clock", "ExpiryScheduler", "TimerToken", "TypingIndicator", "TypingThrottle", "utc_now"]
