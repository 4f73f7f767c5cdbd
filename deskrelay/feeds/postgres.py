from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import asyncpg

from deskrelay.core.errors import TransportError
from deskrelay.events.bus import EventBus
from deskrelay.stores.postgres import translate_transport_errors

from .base import ClaimDetector, EntityLoader, NotificationChangeFeed

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[Any]]


class PostgresChangeFeed(NotificationChangeFeed):
    """Change feed listening on a store's ``<table>_changes`` channel.

    Subscribing is retried with bounded exponential backoff; a dropped
    connection schedules a fresh subscription. While disconnected the owning
    manager keeps serving cached state.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        bus: EventBus,
        *,
        topic: str,
        channel: str,
        max_retries: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 10.0,
        claim_detector: ClaimDetector | None = None,
        loader: EntityLoader | None = None,
    ) -> None:
        super().__init__(bus, topic=topic, claim_detector=claim_detector, loader=loader)
        self._connect = connect
        self._channel = channel
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._connection: Any = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def start(self, scope_key: str) -> None:
        if not scope_key:
            raise ValueError("scope_key is required")
        self._scope_key = scope_key
        self._stopping = False
        if self._connection is not None:
            logger.debug("Change feed for %s already listening", self._topic)
            return
        try:
            await self._subscribe_with_retry()
        except TransportError:
            logger.error(
                "Change feed for %s gave up after %d attempts; serving cached state", self._topic, self._max_retries
            )

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None
        await self._cancel_pending()
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.remove_listener(self._channel, self._on_notification)
                await connection.close()
            except (OSError, asyncpg.InterfaceError):
                logger.debug("Change feed connection for %s already closed", self._topic)
        self._scope_key = None
        logger.debug("Change feed for %s stopped", self._topic)

    async def _subscribe(self) -> None:
        with translate_transport_errors(f"listen on {self._channel}"):
            connection = await self._connect()
            await connection.add_listener(self._channel, self._on_notification)
        connection.add_termination_listener(self._on_termination)
        self._connection = connection
        logger.info("Change feed for %s listening on %s (scope %s)", self._topic, self._channel, self._scope_key)

    async def _subscribe_with_retry(self) -> None:
        delay = self._backoff_seconds
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._subscribe()
                return
            except TransportError:
                if attempt == self._max_retries or self._stopping:
                    raise
                logger.warning(
                    "Change feed for %s failed to subscribe (attempt %d/%d); retrying in %.2fs",
                    self._topic,
                    attempt,
                    self._max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_backoff_seconds)

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        self.handle_notification(payload)

    def _on_termination(self, connection: Any) -> None:
        if connection is not self._connection:
            return
        self._connection = None
        if self._stopping or self._scope_key is None:
            return
        logger.warning("Change feed connection for %s terminated; resubscribing", self._topic)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._resubscribe())

    async def _resubscribe(self) -> None:
        try:
            await self._subscribe_with_retry()
        except TransportError:
            logger.error("Change feed for %s could not resubscribe; serving cached state", self._topic)
