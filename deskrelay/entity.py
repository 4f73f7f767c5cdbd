from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class Entity(BaseModel):
    """Common envelope shared by every persisted entity kind.

    Subclasses override :meth:`status_value`, :meth:`scope_key` and
    :meth:`participant_ids` so stores and change feeds can filter without
    knowing the concrete type.
    """

    model_config = ConfigDict(use_enum_values=False, validate_assignment=False)

    id: str
    created_at: datetime

    def status_value(self) -> str | None:
        status = getattr(self, "status", None)
        if status is None:
            return None
        return str(getattr(status, "value", status))

    def scope_key(self) -> str | None:
        return None

    def participant_ids(self) -> tuple[str, ...]:
        return ()
