"""Unit tests for the board engine wiring."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from mailboard.engine import BoardEngine
from mailboard.exceptions import DuplicateMappingError, InvalidMappingError, SystemColumnError
from mailboard.models import BoardAction, ColumnView, Label, OutcomeStatus, ReadFilter, default_columns
from mailboard.store import BoardStore
from mailboard.sync.push import QueuePushChannel

DONE_LABEL = "Label_done"
SNOOZE_LABEL = "Label_snoozed"


async def _eventually(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def store(tmp_path) -> BoardStore:
    store = BoardStore(tmp_path / "board.sqlite3")
    store.initialize()
    return store


@pytest.fixture
def engine(sync_client, fetch_client, resolver, store, mock_settings, clock, timers) -> BoardEngine:
    return BoardEngine(
        default_columns(done_mapping=DONE_LABEL, snooze_mapping=SNOOZE_LABEL),
        sync=sync_client,
        fetch=fetch_client,
        resolver=resolver,
        store=store,
        settings=mock_settings,
        clock=clock,
        call_later=timers.call_later,
    )


def _ids(engine: BoardEngine, column_id: str) -> list[str]:
    return [item.id for item in engine.snapshot(column_id).items]


class TestCreate:
    """Test suite for building an engine from stored configuration."""

    @pytest.mark.asyncio
    async def test_first_run_creates_default_columns_and_labels(
        self, sync_client, fetch_client, resolver, store, mock_settings
    ) -> None:
        del resolver.labels[DONE_LABEL]

        engine = await BoardEngine.create(
            sync=sync_client, fetch=fetch_client, resolver=resolver, store=store, settings=mock_settings
        )

        assert [c.id for c in engine.columns()] == ["inbox", "todo", "done", "snoozed"]
        assert [label.name for label in resolver.created] == ["Done"]
        assert engine.board.column("done").mapping == resolver.created[0].id
        assert engine.board.column("snoozed").mapping == SNOOZE_LABEL
        assert [c.id for c in store.load_columns()] == ["inbox", "todo", "done", "snoozed"]

    @pytest.mark.asyncio
    async def test_saved_columns_are_reused(self, sync_client, fetch_client, resolver, store, mock_settings) -> None:
        columns = default_columns(done_mapping=DONE_LABEL, snooze_mapping=SNOOZE_LABEL)
        store.save_columns([columns[0].model_copy(update={"title": "Incoming"}), *columns[1:]])

        engine = await BoardEngine.create(
            sync=sync_client, fetch=fetch_client, resolver=resolver, store=store, settings=mock_settings
        )

        assert engine.board.column("inbox").title == "Incoming"
        assert resolver.created == []


class TestLifecycle:
    """Test suite for start, push events, snooze wake-ups and stop."""

    @pytest.mark.asyncio
    async def test_start_loads_every_column_and_persists_positions(
        self, engine, fetch_client, store, item_factory
    ) -> None:
        fetch_client.columns = {
            "INBOX": [item_factory("a"), item_factory("b")],
            "STARRED": [item_factory("d")],
        }

        results = await engine.start()

        assert results == {"inbox": True, "todo": True, "done": True, "snoozed": True}
        assert _ids(engine, "inbox") == ["a", "b"]
        assert _ids(engine, "todo") == ["d"]
        assert store.get_positions("inbox") == {"a": 0, "b": 1000}

    @pytest.mark.asyncio
    async def test_push_channel_events_refresh_affected_columns(self, engine, fetch_client, item_factory) -> None:
        fetch_client.columns = {"INBOX": [item_factory("a"), item_factory("b")]}
        channel = QueuePushChannel()
        await engine.start(channel)
        fetch_client.columns["INBOX"] = [item_factory("b")]

        await channel.publish({"event_type": "email.deleted", "item_id": "a", "timestamp": "2025-01-01T12:00:00Z"})
        await _eventually(lambda: _ids(engine, "inbox") == ["b"])

        await engine.stop()

    @pytest.mark.asyncio
    async def test_snooze_timer_reconciles_when_it_fires(
        self, engine, fetch_client, clock, timers, item_factory
    ) -> None:
        wake_at = clock.now + timedelta(seconds=60)
        fetch_client.columns = {
            "INBOX": [item_factory("a")],
            SNOOZE_LABEL: [item_factory("s", snooze_until=wake_at)],
        }
        await engine.start()

        assert len(timers.armed) == 1
        assert timers.armed[0].delay == pytest.approx(62.0)

        fetch_client.columns = {"INBOX": [item_factory("s"), item_factory("a")]}
        clock.advance(62)
        timers.armed[0].fire()

        await _eventually(lambda: _ids(engine, "snoozed") == [])
        assert set(_ids(engine, "inbox")) == {"a", "s"}
        assert timers.armed == []

    @pytest.mark.asyncio
    async def test_move_through_engine(self, engine, fetch_client, sync_client, store, item_factory) -> None:
        fetch_client.columns = {"INBOX": [item_factory("a"), item_factory("b")]}
        await engine.start()

        outcome = await engine.apply(BoardAction.move("a", "todo"))

        assert outcome.ok
        assert sync_client.calls == [("move_item", "a", "STARRED", "INBOX")]
        assert store.get_positions("todo") == {"a": 0}


class TestColumns:
    """Test suite for column configuration changes."""

    @pytest.mark.asyncio
    async def test_add_column_backed_by_label_name(self, engine, resolver, fetch_client, store, item_factory) -> None:
        resolver.labels["Label_wait"] = Label(id="Label_wait", name="Waiting")
        fetch_client.columns = {"Label_wait": [item_factory("w")]}

        column = await engine.add_column("Waiting on others", mapping="waiting")

        assert column.id == "waiting-on-others"
        assert column.mapping == "Label_wait"
        assert column.order == 4
        assert _ids(engine, column.id) == ["w"]
        assert "waiting-on-others" in [c.id for c in store.load_columns()]

    @pytest.mark.asyncio
    async def test_add_local_column_gets_unique_id(self, engine, fetch_client) -> None:
        first = await engine.add_column("Ideas")
        second = await engine.add_column("Ideas")

        assert (first.id, second.id) == ("ideas", "ideas-2")
        assert first.mapping is None
        assert fetch_client.calls == []

    @pytest.mark.asyncio
    async def test_add_column_rejects_unknown_or_taken_labels(self, engine) -> None:
        with pytest.raises(InvalidMappingError):
            await engine.add_column("Later", mapping="Nope")
        with pytest.raises(DuplicateMappingError):
            await engine.add_column("Also done", mapping="Done")

    @pytest.mark.asyncio
    async def test_delete_column_rehomes_cards_to_default(self, engine, fetch_client, store, item_factory) -> None:
        fetch_client.columns = {"INBOX": [item_factory("a"), item_factory("b")]}
        await engine.start()
        await engine.add_column("Ideas")
        engine.board.replace_items("ideas", [item_factory("x", 0)])
        fetch_client.columns["INBOX"] = [item_factory("a"), item_factory("b"), item_factory("x")]

        rehomed = await engine.delete_column("ideas")

        assert rehomed == 1
        assert "ideas" not in [c.id for c in engine.columns()]
        assert _ids(engine, "inbox") == ["a", "b", "x"]
        assert "ideas" not in [c.id for c in store.load_columns()]

    @pytest.mark.asyncio
    async def test_system_columns_cannot_be_deleted(self, engine) -> None:
        with pytest.raises(SystemColumnError):
            await engine.delete_column("snoozed")

    def test_rename_view_and_reorder_are_persisted(self, engine, store) -> None:
        engine.rename_column("todo", "Next up")
        engine.update_view("todo", ColumnView(read_filter=ReadFilter.UNREAD))
        engine.reorder_columns(["todo", "inbox", "done", "snoozed"])

        saved = {c.id: c for c in store.load_columns()}
        assert saved["todo"].title == "Next up"
        assert saved["todo"].view.read_filter is ReadFilter.UNREAD
        assert [c.id for c in store.load_columns()] == ["todo", "inbox", "done", "snoozed"]


class TestRecovery:
    """Test suite for recovering a column whose label disappeared."""

    @pytest.mark.asyncio
    async def test_recovery_remaps_persists_and_refreshes(
        self, engine, fetch_client, resolver, store, item_factory
    ) -> None:
        fetch_client.columns = {"INBOX": [item_factory("a")]}
        fetch_client.failures[DONE_LABEL] = InvalidMappingError("Label not found", mapping=DONE_LABEL)
        del resolver.labels[DONE_LABEL]
        await engine.start()

        rejected = await engine.apply(BoardAction.move("a", "done"))
        assert rejected.status is OutcomeStatus.REJECTED

        outcome = await engine.recover_column("done")

        assert outcome.recovered is True
        assert engine.health.is_healthy("done") is True
        assert fetch_client.fetched_mappings()[-1] == outcome.mapping
        saved = {c.id: c for c in store.load_columns()}
        assert saved["done"].mapping == outcome.mapping
