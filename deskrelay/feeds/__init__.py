"""Translate remote write notifications into local bus events."""

from .base import ChangeFeed, NotificationChangeFeed, NullChangeFeed
from .postgres import PostgresChangeFeed

__all__ = ["ChangeFeed", "NotificationChangeFeed", "NullChangeFeed", "PostgresChangeFeed"]
