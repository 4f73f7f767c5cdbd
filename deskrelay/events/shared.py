"""Persisted key-value slots whose changes notify other execution contexts.

A write is the signal: publishers set a key and remove it right away, and
every *other* context attached to the same storage observes the change with
the new value carried on the notification itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import asyncpg

logger = logging.getLogger(__name__)

MAX_NOTIFY_BYTES = 7999


@dataclass(frozen=True, slots=True)
class StorageChange:
    """Notification that the value stored under ``key`` changed."""

    key: str
    new_value: str | None
    old_value: str | None = None


StorageHandler = Callable[[StorageChange], None]


class SharedKeyValue(ABC):
    """One execution context's view of the shared key-value slots."""

    def __init__(self) -> None:
        self._handlers: list[StorageHandler] = []

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...

    def add_change_handler(self, handler: StorageHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return remove

    def _notify(self, change: StorageChange) -> None:
        for handler in list(self._handlers):
            try:
                handler(change)
            except Exception:
                logger.exception("Storage change handler failed for key %s", change.key)


class SharedMemoryStorage:
    """Backing slots shared by several in-process views.

    Used to run several execution contexts inside one interpreter (tests,
    embedded workers); each context obtains its own view via :meth:`view`.
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._views: list[StorageView] = []

    def view(self) -> "StorageView":
        view = StorageView(self)
        self._views.append(view)
        return view

    def detach(self, view: "StorageView") -> None:
        if view in self._views:
            self._views.remove(view)

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def _write(self, origin: "StorageView", key: str, value: str | None) -> None:
        old_value = self._values.get(key)
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value
        change = StorageChange(key=key, new_value=value, old_value=old_value)
        for view in list(self._views):
            if view is not origin:
                view._notify(change)


class StorageView(SharedKeyValue):
    """Per-context handle onto :class:`SharedMemoryStorage`."""

    def __init__(self, storage: SharedMemoryStorage) -> None:
        super().__init__()
        self._storage = storage

    def get_item(self, key: str) -> str | None:
        return self._storage.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._storage._write(self, key, value)

    def remove_item(self, key: str) -> None:
        self._storage._write(self, key, None)

    def close(self) -> None:
        self._storage.detach(self)


class PostgresNotifyStorage(SharedKeyValue):
    """Cross-process slots carried over PostgreSQL ``LISTEN``/``NOTIFY``.

    Nothing is stored durably: ``set_item`` issues a notification holding the
    value and ``remove_item`` is a no-op because readers never re-read the key.
    Notifications sent by this view are ignored when they come back to it.
    """

    channel = "deskrelay_shared_keys"

    def __init__(self, pool: asyncpg.Pool) -> None:
        super().__init__()
        self._pool = pool
        self._origin = uuid.uuid4().hex
        self._connection: Any = None
        self._pending: set[asyncio.Task[None]] = set()

    async def open(self) -> None:
        if self._connection is not None:
            return
        self._connection = await self._pool.acquire()
        await self._connection.add_listener(self.channel, self._on_notification)
        logger.debug("Listening for shared key changes on %s", self.channel)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._connection is None:
            return
        await self._connection.remove_listener(self.channel, self._on_notification)
        await self._pool.release(self._connection)
        self._connection = None

    def set_item(self, key: str, value: str) -> None:
        message = json.dumps({"origin": self._origin, "key": key, "value": value})
        size = len(message.encode("utf-8"))
        if size > MAX_NOTIFY_BYTES:
            # Other contexts still see the write through their change feed
            logger.warning("Not broadcasting %s: %d bytes exceeds the NOTIFY limit", key, size)
            return
        task = asyncio.get_running_loop().create_task(self._send(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def remove_item(self, key: str) -> None:
        return None

    async def _send(self, message: str) -> None:
        try:
            async with self._pool.acquire() as connection:
                await connection.execute("SELECT pg_notify($1, $2)", self.channel, message)
        except (OSError, asyncpg.PostgresError):
            logger.warning("Failed to deliver shared key notification", exc_info=True)

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            message = json.loads(payload)
            origin = message["origin"]
            key = message["key"]
            value = message.get("value")
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring unreadable shared key notification on %s", channel)
            return
        if origin == self._origin:
            return
        self._notify(StorageChange(key=str(key), new_value=value if value is None else str(value)))
