"""Route modules exposed by the API package."""

from . import share_requests, tickets

__all__ = ["share_requests", "tickets"]
