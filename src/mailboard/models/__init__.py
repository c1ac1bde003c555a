"""Data models for Mailboard.

This module contains Pydantic models for board items, columns and their
per-column state. Board models are frozen: every change produces a new value
through ``model_copy`` so readers never see a half-updated item or column.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from mailboard.models.actions import (
    ActionKind,
    BoardAction,
    ErrorKind,
    MutationOutcome,
    OutcomeStatus,
)
from mailboard.models.events import (
    ItemDeletedEvent,
    ItemRestoredEvent,
    LabelsChangedEvent,
    PushEvent,
    parse_push_event,
)

DEFAULT_COLUMN_ID = "inbox"
SNOOZED_COLUMN_ID = "snoozed"


class SortOrder(str, Enum):
    """How a column orders its cards."""

    POSITION = "position"
    NEWEST = "newest"
    OLDEST = "oldest"


class ReadFilter(str, Enum):
    """Read-state filter for a column view."""

    ALL = "all"
    UNREAD = "unread"
    READ = "read"


class AttachmentFilter(str, Enum):
    """Attachment filter for a column view."""

    ALL = "all"
    WITH = "with"
    WITHOUT = "without"


class ItemFlag(str, Enum):
    """Per-item flags that the sync client can set on the mail store."""

    STARRED = "starred"
    UNREAD = "unread"
    ARCHIVED = "archived"


class LoadState(str, Enum):
    """Load state of a single column."""

    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class BoardItem(BaseModel):
    """A mail item shown as a card on the board."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Provider message ID")
    thread_id: str | None = Field(default=None, description="Provider thread ID")
    sender: str = Field(default="", description="Display name or address of the sender")
    subject: str = Field(default="", description="Subject header")
    snippet: str = Field(default="", description="Preview text")
    date: datetime | None = Field(default=None, description="Message timestamp")
    is_unread: bool = Field(default=False, description="Whether message is unread")
    is_starred: bool = Field(default=False, description="Whether message is starred")
    has_attachment: bool = Field(default=False, description="Whether message has attachments")
    label_ids: tuple[str, ...] = Field(default=(), description="Provider label IDs")
    summary: str | None = Field(default=None, description="AI-generated summary")
    snooze_until: datetime | None = Field(default=None, description="Wake-up instant if snoozed")
    column_id: str | None = Field(default=None, description="Column holding the card")
    position: int | None = Field(default=None, description="Ordering key within the column")


class ColumnView(BaseModel):
    """Per-column view configuration."""

    model_config = ConfigDict(frozen=True)

    sort: SortOrder = SortOrder.POSITION
    read_filter: ReadFilter = ReadFilter.ALL
    attachment_filter: AttachmentFilter = AttachmentFilter.ALL

    def apply(self, items: Iterable[BoardItem]) -> list[BoardItem]:
        """Return ``items`` filtered and ordered the way this view displays them."""

        shown = [item for item in items if self._matches(item)]
        if self.sort is SortOrder.POSITION:
            return shown

        shown.sort(
            key=lambda item: item.date.timestamp() if item.date else float("-inf"),
            reverse=self.sort is SortOrder.NEWEST,
        )
        return shown

    def _matches(self, item: BoardItem) -> bool:
        if self.read_filter is ReadFilter.UNREAD and not item.is_unread:
            return False
        if self.read_filter is ReadFilter.READ and item.is_unread:
            return False
        if self.attachment_filter is AttachmentFilter.WITH and not item.has_attachment:
            return False
        if self.attachment_filter is AttachmentFilter.WITHOUT and item.has_attachment:
            return False
        return True


class BoardColumn(BaseModel):
    """A workflow column, optionally backed by a provider label."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Stable column ID")
    title: str = Field(description="User-visible title")
    color: str = Field(default="#64748b", description="Rendering color")
    mapping: str | None = Field(
        default=None,
        description="Provider label ID backing the column; None for local-only columns",
    )
    is_system: bool = Field(default=False, description="System columns cannot be deleted")
    order: int = Field(default=0, description="Display order on the board")
    view: ColumnView = Field(default_factory=ColumnView)


class ColumnLoad(BaseModel):
    """Load state of one column, independent of every other column."""

    model_config = ConfigDict(frozen=True)

    state: LoadState = LoadState.IDLE
    error: str | None = None
    next_page_token: str | None = None


class ColumnHealth(BaseModel):
    """Health of the label backing a column."""

    model_config = ConfigDict(frozen=True)

    column_id: str
    healthy: bool = True
    reason: str | None = None
    detected_at: datetime | None = None


class SnoozeEntry(BaseModel):
    """An item waiting to re-appear at ``wake_at``."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    thread_id: str | None = None
    wake_at: datetime


class Label(BaseModel):
    """A provider label."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class RateLimited(BaseModel):
    """Returned by the summary cache when its request budget is spent."""

    model_config = ConfigDict(frozen=True)

    retry_after: float = Field(default=60.0, description="Seconds until a new request is allowed")


class FetchPage(BaseModel):
    """One page of a column listing."""

    items: list[BoardItem] = Field(default_factory=list)
    next_page_token: str | None = None


def default_columns(*, done_mapping: str | None, snooze_mapping: str | None) -> list[BoardColumn]:
    """Columns created at first load when the user has no configuration yet."""

    return [
        BoardColumn(
            id=DEFAULT_COLUMN_ID,
            title="Inbox",
            color="#3b82f6",
            mapping="INBOX",
            is_system=True,
            order=0,
        ),
        BoardColumn(id="todo", title="To Do", color="#f97316", mapping="STARRED", order=1),
        BoardColumn(id="done", title="Done", color="#22c55e", mapping=done_mapping, order=2),
        BoardColumn(
            id=SNOOZED_COLUMN_ID,
            title="Snoozed",
            color="#a855f7",
            mapping=snooze_mapping,
            is_system=True,
            order=3,
        ),
    ]


__all__ = [
    "DEFAULT_COLUMN_ID",
    "SNOOZED_COLUMN_ID",
    "ActionKind",
    "AttachmentFilter",
    "BoardAction",
    "BoardColumn",
    "BoardItem",
    "ColumnHealth",
    "ColumnLoad",
    "ColumnView",
    "ErrorKind",
    "FetchPage",
    "ItemDeletedEvent",
    "ItemFlag",
    "ItemRestoredEvent",
    "Label",
    "LabelsChangedEvent",
    "LoadState",
    "MutationOutcome",
    "OutcomeStatus",
    "PushEvent",
    "RateLimited",
    "ReadFilter",
    "SnoozeEntry",
    "SortOrder",
    "default_columns",
    "parse_push_event",
]
