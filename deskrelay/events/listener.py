from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from pydantic import ValidationError

from deskrelay.core.errors import MalformedPayloadError
from deskrelay.entity import Entity
from deskrelay.participants import Participant

from .bus import EventBus, Unsubscribe
from .envelope import ChangeEnvelope, EventType, decode_envelope

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


@dataclass
class EntityCallbacks(Generic[E]):
    """Optional callbacks a consumer registers for one entity kind."""

    on_created: Callable[[E], None] | None = None
    on_updated: Callable[[E], None] | None = None
    on_deleted: Callable[[str], None] | None = None
    on_cleared: Callable[[], None] | None = None


class EntityListener(Generic[E]):
    """Per-consumer subscription to the change events of one entity kind.

    The listener registers on both bus paths, suppresses envelopes it has
    already delivered, decodes entities into ``model`` and invokes the
    matching callback inside its own failure boundary.
    """

    dedupe_window = 256

    def __init__(
        self,
        bus: EventBus,
        topic: str,
        model: type[E],
        callbacks: EntityCallbacks[E] | None = None,
    ) -> None:
        self._bus = bus
        self._topic = topic
        self._model = model
        self._callbacks: EntityCallbacks[E] = callbacks or EntityCallbacks()
        self._unsubscribers: list[Unsubscribe] = []
        self._seen: OrderedDict[tuple[str, str, int, str], None] = OrderedDict()

    @property
    def is_listening(self) -> bool:
        return bool(self._unsubscribers)

    @property
    def topic(self) -> str:
        return self._topic

    def replace_callbacks(self, callbacks: EntityCallbacks[E]) -> None:
        self._callbacks = callbacks

    def start(self) -> None:
        if self.is_listening:
            return
        self._unsubscribers = [
            self._bus.subscribe_local(self._topic, self._on_local),
            self._bus.subscribe_remote(self._topic, self._on_remote),
        ]
        logger.debug("%s started listening on %s", type(self).__name__, self._topic)

    def stop(self) -> None:
        if not self.is_listening:
            return
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        logger.debug("%s stopped listening on %s", type(self).__name__, self._topic)

    def _on_local(self, envelope: ChangeEnvelope) -> None:
        try:
            self._dispatch(envelope)
        except MalformedPayloadError:
            logger.exception("Dropping malformed %s event on %s", envelope.type, self._topic)

    def _on_remote(self, raw: str) -> None:
        try:
            envelope = decode_envelope(raw)
            self._dispatch(envelope)
        except MalformedPayloadError:
            logger.exception("Dropping malformed cross-process event on %s", self._topic)

    def _dispatch(self, envelope: ChangeEnvelope) -> None:
        event_type = envelope.event_type
        if event_type is None:
            logger.debug("Ignoring unknown event type %r on %s", envelope.type, self._topic)
            return
        if self._already_seen(envelope):
            logger.debug("Suppressing duplicate %s event for %s", envelope.type, envelope.entity_id)
            return

        callback = getattr(self._callbacks, f"on_{event_type.value}", None)
        if callback is None and event_type is EventType.CLAIMED:
            callback = self._callbacks.on_updated
        if callback is None:
            return

        if event_type is EventType.DELETED:
            self._invoke(event_type, callback, envelope.entity_id)
        elif event_type is EventType.CLEARED:
            self._invoke(event_type, callback)
        elif event_type is EventType.TYPING:
            self._invoke(event_type, callback, envelope.entity_id, self._decode_participant(envelope))
        else:
            self._invoke(event_type, callback, self._decode_entity(envelope))

    def _invoke(self, event_type: EventType, callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback on_%s failed", type(self).__name__, event_type.value)

    def _decode_entity(self, envelope: ChangeEnvelope) -> E:
        if envelope.entity is None:
            raise MalformedPayloadError(f"{envelope.type} event for {envelope.entity_id} carries no entity")
        try:
            return self._model.model_validate(envelope.entity)
        except ValidationError as exc:
            raise MalformedPayloadError(f"Invalid {self._model.__name__} payload") from exc

    @staticmethod
    def _decode_participant(envelope: ChangeEnvelope) -> Participant:
        try:
            return Participant.model_validate(envelope.entity)
        except ValidationError as exc:
            raise MalformedPayloadError("Invalid typing participant payload") from exc

    def _already_seen(self, envelope: ChangeEnvelope) -> bool:
        key = envelope.dedupe_key
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        while len(self._seen) > self.dedupe_window:
            self._seen.popitem(last=False)
        return False
