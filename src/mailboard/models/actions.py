"""Board actions and mutation outcomes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ActionKind(str, Enum):
    """State-changing actions a user can perform on a card."""

    MOVE = "move"
    TOGGLE_STAR = "toggle_star"
    TOGGLE_READ = "toggle_read"
    ARCHIVE = "archive"
    DELETE = "delete"
    SNOOZE = "snooze"
    UNSNOOZE = "unsnooze"


class OutcomeStatus(str, Enum):
    """How a mutation ended."""

    CONFIRMED = "confirmed"
    RECONCILED = "reconciled"
    REJECTED = "rejected"


class ErrorKind(str, Enum):
    """Error taxonomy surfaced to callers of the board."""

    TRANSIENT = "transient"
    INVALID_MAPPING = "invalid_mapping"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"


class BoardAction(BaseModel):
    """A single action against one item."""

    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    item_id: str
    to_column: str | None = Field(default=None, description="Destination column for moves")
    index: int | None = Field(default=None, ge=0, description="Destination index; None appends")
    until: datetime | None = Field(default=None, description="Wake-up instant for snoozes")

    @model_validator(mode="after")
    def _check_arguments(self) -> "BoardAction":
        if self.kind is ActionKind.MOVE and not self.to_column:
            raise ValueError("move requires to_column")
        if self.kind is ActionKind.SNOOZE and self.until is None:
            raise ValueError("snooze requires until")
        return self

    @classmethod
    def move(cls, item_id: str, to_column: str, index: int | None = None) -> "BoardAction":
        return cls(kind=ActionKind.MOVE, item_id=item_id, to_column=to_column, index=index)

    @classmethod
    def toggle_star(cls, item_id: str) -> "BoardAction":
        return cls(kind=ActionKind.TOGGLE_STAR, item_id=item_id)

    @classmethod
    def toggle_read(cls, item_id: str) -> "BoardAction":
        return cls(kind=ActionKind.TOGGLE_READ, item_id=item_id)

    @classmethod
    def archive(cls, item_id: str) -> "BoardAction":
        return cls(kind=ActionKind.ARCHIVE, item_id=item_id)

    @classmethod
    def delete(cls, item_id: str) -> "BoardAction":
        return cls(kind=ActionKind.DELETE, item_id=item_id)

    @classmethod
    def snooze(cls, item_id: str, until: datetime) -> "BoardAction":
        return cls(kind=ActionKind.SNOOZE, item_id=item_id, until=until)

    @classmethod
    def unsnooze(cls, item_id: str) -> "BoardAction":
        return cls(kind=ActionKind.UNSNOOZE, item_id=item_id)


class MutationOutcome(BaseModel):
    """Result of applying a board action."""

    model_config = ConfigDict(frozen=True)

    action: BoardAction
    status: OutcomeStatus
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.CONFIRMED
