from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Hashable

from .clock import Clock, utc_now

logger = logging.getLogger(__name__)

ExpiryCallback = Callable[[], Awaitable[object]]

_token_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class TimerToken:
    """Handle identifying one armed timer."""

    id: int
    deadline: datetime
    key: Hashable | None = field(default=None, compare=False)


class ExpiryScheduler:
    """Cancellable single-shot timers keyed to domain deadlines.

    Each timer runs its callback once, as a task on the running loop, when
    the clock reaches ``deadline``. Arming with a ``key`` replaces any timer
    already armed under that key. Callbacks must re-check their own
    precondition; a timer firing only means the deadline passed.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._handles: dict[int, asyncio.TimerHandle] = {}
        self._tokens: dict[int, TimerToken] = {}
        self._by_key: dict[Hashable, int] = {}
        self._running: set[asyncio.Task[object]] = set()

    @property
    def pending(self) -> int:
        return len(self._handles)

    def armed(self, key: Hashable) -> TimerToken | None:
        token_id = self._by_key.get(key)
        return None if token_id is None else self._tokens.get(token_id)

    def arm(self, deadline: datetime, callback: ExpiryCallback, *, key: Hashable | None = None) -> TimerToken:
        if key is not None:
            self.cancel_key(key)
        loop = asyncio.get_running_loop()
        token = TimerToken(id=next(_token_ids), deadline=deadline, key=key)
        delay = max(0.0, (deadline - self._clock()).total_seconds())
        self._handles[token.id] = loop.call_later(delay, self._fire, token, callback)
        self._tokens[token.id] = token
        if key is not None:
            self._by_key[key] = token.id
        logger.debug("Armed timer %d (key=%s) for %s", token.id, key, deadline.isoformat())
        return token

    def cancel(self, token: TimerToken) -> bool:
        handle = self._handles.pop(token.id, None)
        self._tokens.pop(token.id, None)
        if token.key is not None and self._by_key.get(token.key) == token.id:
            del self._by_key[token.key]
        if handle is None:
            return False
        handle.cancel()
        logger.debug("Cancelled timer %d (key=%s)", token.id, token.key)
        return True

    def cancel_key(self, key: Hashable) -> bool:
        token = self.armed(key)
        if token is None:
            return False
        return self.cancel(token)

    def cancel_all(self) -> None:
        for token in list(self._tokens.values()):
            self.cancel(token)

    async def close(self) -> None:
        self.cancel_all()
        for task in list(self._running):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    def _fire(self, token: TimerToken, callback: ExpiryCallback) -> None:
        self._handles.pop(token.id, None)
        self._tokens.pop(token.id, None)
        if token.key is not None and self._by_key.get(token.key) == token.id:
            del self._by_key[token.key]
        task = asyncio.get_running_loop().create_task(self._run(token, callback))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, token: TimerToken, callback: ExpiryCallback) -> None:
        logger.debug("Timer %d (key=%s) fired", token.id, token.key)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Expiry callback for timer %d (key=%s) failed", token.id, token.key)
