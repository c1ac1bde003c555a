"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import structlog

from mailboard.board.state import Board
from mailboard.exceptions import InvalidMappingError
from mailboard.models import BoardItem, FetchPage, ItemFlag, Label, default_columns

DONE_LABEL = "Label_done"
SNOOZE_LABEL = "Label_snoozed"


class FakeSyncClient:
    """Records sync calls. Failures and gates are keyed by method name."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def move_item(
        self,
        item_id: str,
        thread_id: str | None,
        target_mapping: str | None,
        *,
        source_mapping: str | None = None,
    ) -> None:
        await self._record("move_item", item_id, target_mapping, source_mapping)

    async def set_flag(self, item_id: str, flag: ItemFlag, value: bool) -> None:
        await self._record("set_flag", item_id, flag, value)

    async def delete_item(self, item_id: str) -> None:
        await self._record("delete_item", item_id)

    async def snooze_item(
        self,
        item_id: str,
        thread_id: str | None,
        until: datetime,
        *,
        source_mapping: str | None = None,
    ) -> None:
        await self._record("snooze_item", item_id, until, source_mapping)

    async def unsnooze_item(self, item_id: str) -> None:
        await self._record("unsnooze_item", item_id)


class FakeFetchClient:
    """Serves column contents from a dict of label id to items."""

    def __init__(self, columns: dict[str, list[BoardItem]] | None = None, page_size: int | None = None) -> None:
        self.columns: dict[str, list[BoardItem]] = columns or {}
        self.page_size = page_size
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str | None]] = []

    async def list_column(self, mapping: str, page_token: str | None = None) -> FetchPage:
        self.calls.append((mapping, page_token))
        failure = self.failures.get(mapping)
        if failure is not None:
            raise failure

        items = self.columns.get(mapping, [])
        start = int(page_token or 0)
        end = len(items) if self.page_size is None else min(len(items), start + self.page_size)
        next_token = str(end) if end < len(items) else None
        return FetchPage(items=list(items[start:end]), next_page_token=next_token)

    def fetched_mappings(self) -> list[str]:
        return [mapping for mapping, _ in self.calls]


class FakeResolver:
    """In-memory label registry."""

    def __init__(self, labels: list[Label] | None = None) -> None:
        self.labels: dict[str, Label] = {label.id: label for label in labels or []}
        self.created: list[Label] = []
        self.create_failure: Exception | None = None

    async def resolve_mapping(self, mapping: str) -> Label:
        if mapping in self.labels:
            return self.labels[mapping]
        for label in self.labels.values():
            if label.name.lower() == mapping.lower():
                return label
        raise InvalidMappingError(f"Label '{mapping}' does not exist", mapping=mapping)

    async def create_mapping(self, name: str, color: str | None = None) -> Label:
        if self.create_failure is not None:
            raise self.create_failure
        for label in self.labels.values():
            if label.name == name:
                return label
        label = Label(id=f"Label_{len(self.labels) + 1}", name=name)
        self.labels[label.id] = label
        self.created.append(label)
        return label


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        self.callback()


class FakeTimers:
    """Stand-in for ``loop.call_later`` that never fires on its own."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def armed(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_item(item_id: str, position: int | None = None, **fields: Any) -> BoardItem:
    defaults: dict[str, Any] = {
        "thread_id": f"t-{item_id}",
        "sender": "Ada Lovelace",
        "subject": f"Subject {item_id}",
        "snippet": f"Snippet {item_id}",
        "date": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    defaults.update(fields)
    return BoardItem(id=item_id, position=position, **defaults)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo global structlog configuration (e.g. from ``cli.main``) between tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_settings():
    """Provide mock settings for testing."""
    from mailboard.config import Settings

    return Settings(
        ollama_host="http://test:11434",
        ollama_model="test-model",
        log_level="DEBUG",
        debug=True,
        retry_delay_seconds=0.0,
        snooze_buffer_seconds=2.0,
    )


@pytest.fixture
def item_factory() -> Callable[..., BoardItem]:
    return make_item


@pytest.fixture
def board() -> Board:
    """A board with the four default columns and a few cards."""
    board = Board(default_columns(done_mapping=DONE_LABEL, snooze_mapping=SNOOZE_LABEL))
    board.replace_items("inbox", [make_item("a", 0), make_item("b", 1000), make_item("c", 2000)])
    board.replace_items("todo", [make_item("d", 0, is_starred=True)])
    return board


@pytest.fixture
def sync_client() -> FakeSyncClient:
    return FakeSyncClient()


@pytest.fixture
def fetch_client() -> FakeFetchClient:
    return FakeFetchClient()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver(
        [
            Label(id="INBOX", name="INBOX"),
            Label(id="STARRED", name="STARRED"),
            Label(id=DONE_LABEL, name="Done"),
            Label(id=SNOOZE_LABEL, name="Snoozed"),
        ]
    )


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sample_email_data() -> dict:
    """Provide sample email data structure."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Weekly Newsletter &amp; Python Tips",
        "internalDate": "1735732800000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python Weekly <newsletter@python.org>"},
                {"name": "To", "value": "user@example.com"},
            ],
            "parts": [
                {
                    "mimeType": "text/plain",
                    "body": {"data": "SGVsbG8gZnJvbSBQeXRob24gV2Vla2x5"},
                },
                {
                    "mimeType": "application/pdf",
                    "filename": "tips.pdf",
                    "body": {"attachmentId": "att-1"},
                },
            ],
        },
    }
