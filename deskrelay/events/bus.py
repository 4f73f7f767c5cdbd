from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable

from .envelope import ChangeEnvelope, encode_envelope
from .shared import SharedKeyValue, StorageChange

logger = logging.getLogger(__name__)

LocalHandler = Callable[[ChangeEnvelope], None]
RemoteHandler = Callable[[str], None]
Unsubscribe = Callable[[], None]


def event_key(topic: str) -> str:
    """Name of the shared slot used to signal changes for ``topic``."""

    return f"{topic}-event"


class EventBus(ABC):
    """Typed notification fabric used by stores, feeds and listeners.

    Handlers on the local path receive parsed envelopes synchronously and in
    publish order. Handlers on the remote path receive the raw serialized
    payload written by another execution context and must parse it
    themselves.
    """

    def __init__(self) -> None:
        self._local: dict[str, list[LocalHandler]] = defaultdict(list)

    def publish(self, topic: str, envelope: ChangeEnvelope, *, broadcast: bool = True) -> None:
        self._dispatch_local(topic, envelope)
        if broadcast:
            self._broadcast(topic, envelope)

    def subscribe_local(self, topic: str, handler: LocalHandler) -> Unsubscribe:
        self._local[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._local.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    @abstractmethod
    def subscribe_remote(self, topic: str, handler: RemoteHandler) -> Unsubscribe:
        ...

    @abstractmethod
    def _broadcast(self, topic: str, envelope: ChangeEnvelope) -> None:
        ...

    def _dispatch_local(self, topic: str, envelope: ChangeEnvelope) -> None:
        for handler in list(self._local.get(topic, ())):
            try:
                handler(envelope)
            except Exception:
                logger.exception("Local handler failed for %s event on %s", envelope.type, topic)


class InProcessEventBus(EventBus):
    """Single-context bus: synchronous broadcast, nothing leaves the process."""

    def subscribe_remote(self, topic: str, handler: RemoteHandler) -> Unsubscribe:
        return lambda: None

    def _broadcast(self, topic: str, envelope: ChangeEnvelope) -> None:
        return None


class SharedKeyEventBus(EventBus):
    """Bus that also signals other contexts through a shared key-value slot."""

    def __init__(self, storage: SharedKeyValue) -> None:
        super().__init__()
        self._storage = storage
        self._remote: dict[str, list[RemoteHandler]] = defaultdict(list)
        self._detach = storage.add_change_handler(self._on_storage_change)

    def subscribe_remote(self, topic: str, handler: RemoteHandler) -> Unsubscribe:
        key = event_key(topic)
        self._remote[key].append(handler)

        def unsubscribe() -> None:
            handlers = self._remote.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def close(self) -> None:
        self._detach()
        self._remote.clear()
        self._local.clear()

    def _broadcast(self, topic: str, envelope: ChangeEnvelope) -> None:
        key = event_key(topic)
        self._storage.set_item(key, encode_envelope(envelope))
        self._storage.remove_item(key)
        logger.debug("Signalled %s event for %s on %s", envelope.type, envelope.entity_id, key)

    def _on_storage_change(self, change: StorageChange) -> None:
        if not change.new_value:
            return
        for handler in list(self._remote.get(change.key, ())):
            try:
                handler(change.new_value)
            except Exception:
                logger.exception("Remote handler failed for key %s", change.key)
