from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ParticipantRole(str, Enum):
    """Roles an actor can play around a ticket."""

    CUSTOMER = "customer"
    ENGINEER = "engineer"


class Participant(BaseModel):
    """Read-only back-reference to an actor involved with an entity."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: ParticipantRole
    name: str = ""

    @property
    def is_customer(self) -> bool:
        return self.role is ParticipantRole.CUSTOMER

    @property
    def is_engineer(self) -> bool:
        return self.role is ParticipantRole.ENGINEER
