"""Collaborator contracts consumed by the board engine.

The Gmail-backed implementations live in ``mailboard.gmail.sync``; tests use
in-memory fakes with the same shape.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from mailboard.models import FetchPage, ItemFlag, Label, RateLimited


@runtime_checkable
class SyncClient(Protocol):
    """Writes board mutations to the mail store.

    Every method raises ``TransientSyncError`` for retryable failures and
    ``InvalidMappingError`` when a label involved in the call is missing.
    """

    async def move_item(
        self,
        item_id: str,
        thread_id: str | None,
        target_mapping: str | None,
        *,
        source_mapping: str | None = None,
    ) -> None: ...

    async def set_flag(self, item_id: str, flag: ItemFlag, value: bool) -> None: ...

    async def delete_item(self, item_id: str) -> None: ...

    async def snooze_item(
        self,
        item_id: str,
        thread_id: str | None,
        until: datetime,
        *,
        source_mapping: str | None = None,
    ) -> None: ...

    async def unsnooze_item(self, item_id: str) -> None: ...


@runtime_checkable
class FetchClient(Protocol):
    """Reads the membership of one label, a page at a time."""

    async def list_column(self, mapping: str, page_token: str | None = None) -> FetchPage: ...


@runtime_checkable
class MappingResolver(Protocol):
    """Finds or creates the label backing a column."""

    async def resolve_mapping(self, mapping: str) -> Label: ...

    async def create_mapping(self, name: str, color: str | None = None) -> Label: ...


@runtime_checkable
class SummaryCache(Protocol):
    """Best-effort write-through cache of AI summaries."""

    async def generate_summary(self, item_id: str, force: bool = False) -> str | RateLimited: ...


class PushChannel(Protocol):
    """Long-lived stream of raw external event payloads."""

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...
