from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from deskrelay.participants import Participant

from .clock import Clock, utc_now

logger = logging.getLogger(__name__)


class TypingThrottle:
    """Sender-side limiter: at most one typing signal per ``interval``."""

    def __init__(self, interval_seconds: float = 5.0, *, clock: Clock = utc_now) -> None:
        self._interval = timedelta(seconds=interval_seconds)
        self._clock = clock
        self._last_emitted: datetime | None = None

    def should_emit(self) -> bool:
        now = self._clock()
        if self._last_emitted is not None and now - self._last_emitted < self._interval:
            return False
        self._last_emitted = now
        return True

    def reset(self) -> None:
        self._last_emitted = None


class TypingIndicator:
    """Receiver-side transient projection of who is currently typing.

    Every observed signal sets the participant's expiry to ``now + expiry``,
    replacing any previous expiry. A background sweep clears participants
    whose expiry has passed and reports the change through ``on_change``.
    """

    def __init__(
        self,
        *,
        expiry_seconds: float = 6.0,
        check_interval_seconds: float = 1.0,
        clock: Clock = utc_now,
        on_change: Callable[[Participant, bool], None] | None = None,
    ) -> None:
        self._expiry = timedelta(seconds=expiry_seconds)
        self._check_interval = check_interval_seconds
        self._clock = clock
        self._on_change = on_change
        self._typing: dict[str, tuple[Participant, datetime]] = {}
        self._task: asyncio.Task[None] | None = None

    def observe(self, participant: Participant) -> datetime:
        expires_at = self._clock() + self._expiry
        was_typing = self.is_typing(participant.id)
        self._typing[participant.id] = (participant, expires_at)
        if not was_typing:
            self._notify(participant, True)
        return expires_at

    def is_typing(self, participant_id: str) -> bool:
        entry = self._typing.get(participant_id)
        if entry is None:
            return False
        return self._clock() <= entry[1]

    def expires_at(self, participant_id: str) -> datetime | None:
        entry = self._typing.get(participant_id)
        return None if entry is None else entry[1]

    def typing_participants(self) -> list[Participant]:
        return [participant for participant, _ in self._typing.values() if self.is_typing(participant.id)]

    def sweep(self) -> list[Participant]:
        now = self._clock()
        expired = [participant for participant, deadline in self._typing.values() if now > deadline]
        for participant in expired:
            del self._typing[participant.id]
            self._notify(participant, False)
        return expired

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            self.sweep()

    def _notify(self, participant: Participant, typing: bool) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(participant, typing)
        except Exception:
            logger.exception("Typing indicator callback failed for %s", participant.id)
