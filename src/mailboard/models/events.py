"""Push channel events.

The push channel delivers a small, closed set of event types. Each one is a
separate model tagged by ``event_type`` so the reconciliation listener can map
every variant to a refresh scope.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

_WIRE_KEYS = {
    "eventType": "event_type",
    "event": "event_type",
    "itemId": "item_id",
    "emailId": "item_id",
    "toMapping": "to_mapping",
    "toColumnId": "to_mapping",
}


class _PushEventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    item_id: str
    timestamp: datetime

    @property
    def dedupe_key(self) -> tuple[str, str, datetime]:
        return (self.event_type, self.item_id, self.timestamp)  # type: ignore[attr-defined]


class ItemRestoredEvent(_PushEventBase):
    """A snoozed item was restored by the mail store."""

    event_type: Literal["email.restored"] = "email.restored"
    to_mapping: str | None = None


class LabelsChangedEvent(_PushEventBase):
    """Labels on an item changed outside the board."""

    event_type: Literal["labels.changed"] = "labels.changed"
    to_mapping: str | None = None


class ItemDeletedEvent(_PushEventBase):
    """An item was deleted or trashed outside the board."""

    event_type: Literal["email.deleted"] = "email.deleted"


PushEvent = Annotated[
    Union[ItemRestoredEvent, LabelsChangedEvent, ItemDeletedEvent],
    Field(discriminator="event_type"),
]

_push_event_adapter: TypeAdapter[PushEvent] = TypeAdapter(PushEvent)


def parse_push_event(payload: dict[str, Any]) -> PushEvent:
    """Validate a raw push payload into one of the event variants.

    Accepts both snake_case and camelCase keys, and the ``{"event": ..., "data": {...}}``
    envelope used by server-sent events.

    Raises:
        pydantic.ValidationError: If the payload is not a known event.
    """

    data = payload
    if isinstance(payload.get("data"), dict):
        data = {"event": payload.get("event"), **payload["data"]}

    normalized: dict[str, Any] = {}
    for key, value in data.items():
        target = _WIRE_KEYS.get(key, key)
        if value is None and target in normalized:
            continue
        normalized[target] = value

    return _push_event_adapter.validate_python(normalized)
