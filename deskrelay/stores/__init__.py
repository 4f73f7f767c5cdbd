"""Typed CRUD over one entity kind, publishing every mutation on the bus."""

from .base import EntityFilter, EntityStore
from .memory import MemoryStore
from .postgres import PostgresStore

__all__ = ["EntityFilter", "EntityStore", "MemoryStore", "PostgresStore"]
