from __future__ import annotations

import hashlib
import json
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from deskrelay.core.errors import MalformedPayloadError
from deskrelay.entity import Entity


class EventType(str, Enum):
    """Closed set of change notifications understood by listeners."""

    CREATED = "created"
    UPDATED = "updated"
    CLAIMED = "claimed"
    DELETED = "deleted"
    CLEARED = "cleared"
    TYPING = "typing"


class ChangeEnvelope(BaseModel):
    """Wire shape ``{type, entityId, entity, timestamp}`` of a change event.

    ``type`` stays a plain string on the wire so that consumers can ignore
    kinds they do not know; :attr:`event_type` resolves it.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str
    entity_id: str = Field(alias="entityId")
    entity: dict[str, Any] | None = None
    timestamp: int

    @property
    def event_type(self) -> EventType | None:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    @property
    def dedupe_key(self) -> tuple[str, str, int, str]:
        digest = hashlib.sha1(json.dumps(self.entity, sort_keys=True).encode("utf-8")).hexdigest()
        return (self.type, self.entity_id, self.timestamp, digest)

    @classmethod
    def for_entity(
        cls,
        event_type: EventType,
        entity: Entity,
        *,
        timestamp: int | None = None,
    ) -> "ChangeEnvelope":
        return cls(
            type=event_type.value,
            entity_id=entity.id,
            entity=entity.model_dump(mode="json"),
            timestamp=timestamp if timestamp is not None else now_ms(),
        )


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_envelope(envelope: ChangeEnvelope) -> str:
    return envelope.model_dump_json(by_alias=True)


def decode_envelope(raw: str | bytes | None) -> ChangeEnvelope:
    """Parse a serialized envelope, raising :class:`MalformedPayloadError`."""

    if raw is None or raw == "" or raw == b"":
        raise MalformedPayloadError("Empty change envelope")
    try:
        return ChangeEnvelope.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedPayloadError(f"Invalid change envelope: {exc.error_count()} error(s)") from exc
