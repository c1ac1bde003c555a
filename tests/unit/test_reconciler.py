"""Unit tests for the reconciliation listener."""

from __future__ import annotations

import pytest

from mailboard.board.health import LabelHealthMonitor
from mailboard.board.reconciler import ReconciliationListener
from mailboard.board.state import PutItem
from mailboard.exceptions import InvalidMappingError, TransientSyncError
from mailboard.models import BoardColumn, LoadState
from mailboard.sync.push import QueuePushChannel

TIMESTAMP = "2025-01-01T12:00:00Z"


class _Positions:
    def __init__(self, known: dict[str, dict[str, int]] | None = None) -> None:
        self.known = known or {}
        self.saved: list[tuple[str, list[tuple[str, int]]]] = []

    def load(self, column_id: str) -> dict[str, int]:
        return dict(self.known.get(column_id, {}))

    def save(self, column_id: str, items) -> None:
        self.saved.append((column_id, [(item.id, item.position) for item in items]))


@pytest.fixture
def positions() -> _Positions:
    return _Positions()


@pytest.fixture
def refreshed() -> list[int]:
    return []


@pytest.fixture
def health(board, resolver) -> LabelHealthMonitor:
    return LabelHealthMonitor(board, resolver)


@pytest.fixture
def listener(board, fetch_client, health, positions, refreshed) -> ReconciliationListener:
    return ReconciliationListener(
        board,
        fetch_client,
        health=health,
        load_positions=positions.load,
        save_positions=positions.save,
        on_refreshed=lambda: refreshed.append(1),
        dedupe_size=16,
    )


def _ids(board, column_id: str) -> list[str]:
    return [item.id for item in board.snapshot(column_id).items]


class TestRefresh:
    """Test suite for scoped and full refreshes."""

    @pytest.mark.asyncio
    async def test_full_refresh_loads_default_column_last(
        self, board, fetch_client, listener, refreshed, item_factory
    ) -> None:
        fetch_client.columns = {
            "INBOX": [item_factory("a"), item_factory("b"), item_factory("c"), item_factory("d")],
            "STARRED": [item_factory("d")],
            "Label_done": [item_factory("b")],
        }

        results = await listener.refresh()

        assert all(results.values())
        assert fetch_client.fetched_mappings()[-1] == "INBOX"
        assert _ids(board, "inbox") == ["a", "c"]
        assert _ids(board, "done") == ["b"]
        assert _ids(board, "todo") == ["d"]
        assert refreshed == [1]

    @pytest.mark.asyncio
    async def test_refresh_drops_pending_patches(self, board, fetch_client, listener, item_factory) -> None:
        board.stage(99, {"todo": [PutItem(item_factory("x", 5000))]})
        fetch_client.columns = {"STARRED": [item_factory("d")]}

        await listener.refresh(["todo"])

        assert _ids(board, "todo") == ["d"]
        assert board.has_pending("todo") is False

    @pytest.mark.asyncio
    async def test_failed_column_keeps_its_cards_and_others_load(
        self, board, fetch_client, listener, item_factory
    ) -> None:
        board.replace_items("done", [item_factory("e", 0)])
        fetch_client.columns = {"STARRED": [item_factory("d"), item_factory("f")]}
        fetch_client.failures["Label_done"] = TransientSyncError("boom")

        results = await listener.refresh(["done", "todo"])

        assert results == {"done": False, "todo": True}
        done = board.snapshot("done")
        assert [i.id for i in done.items] == ["e"]
        assert done.load.state is LoadState.ERROR
        assert done.load.error == "boom"
        assert _ids(board, "todo") == ["d", "f"]
        assert board.snapshot("todo").load.state is LoadState.LOADED

    @pytest.mark.asyncio
    async def test_missing_label_marks_column_unhealthy(self, fetch_client, listener, health) -> None:
        fetch_client.failures["Label_done"] = InvalidMappingError("Label not found", mapping="Label_done")

        await listener.refresh(["done"])

        assert health.is_healthy("done") is False

    @pytest.mark.asyncio
    async def test_local_only_columns_are_not_fetched(self, board, fetch_client, listener) -> None:
        board.add_column(BoardColumn(id="ideas", title="Ideas", order=9))

        results = await listener.refresh(["ideas"])

        assert results == {"ideas": True}
        assert fetch_client.calls == []

    @pytest.mark.asyncio
    async def test_stored_positions_order_cards_and_new_cards_append(
        self, board, fetch_client, listener, positions, item_factory
    ) -> None:
        positions.known["todo"] = {"z": -5, "d": 10}
        fetch_client.columns = {"STARRED": [item_factory("d"), item_factory("n"), item_factory("z")]}

        await listener.refresh(["todo"])

        assert _ids(board, "todo") == ["z", "d", "n"]
        assert board.find("n")[1].position == 1010
        assert positions.saved == [("todo", [("n", 1010)])]

    @pytest.mark.asyncio
    async def test_load_more_appends_next_page(self, board, fetch_client, listener, item_factory) -> None:
        fetch_client.page_size = 2
        fetch_client.columns = {"INBOX": [item_factory("a"), item_factory("b"), item_factory("c")]}

        await listener.refresh(["inbox"])
        assert _ids(board, "inbox") == ["a", "b"]
        assert board.snapshot("inbox").load.next_page_token == "2"

        added = await listener.load_more("inbox")

        assert added == 1
        assert _ids(board, "inbox") == ["a", "b", "c"]
        assert board.snapshot("inbox").load.next_page_token is None
        assert await listener.load_more("inbox") == 0


class TestExternalEvents:
    """Test suite for push event handling."""

    @pytest.mark.asyncio
    async def test_duplicate_events_reconcile_once(self, fetch_client, listener) -> None:
        payload = {"event_type": "labels.changed", "item_id": "a", "to_mapping": "Label_done", "timestamp": TIMESTAMP}

        first = await listener.on_external_event(payload)
        second = await listener.on_external_event(dict(payload))

        assert first is True
        assert second is False
        assert sorted(fetch_client.fetched_mappings()) == ["INBOX", "Label_done"]

    @pytest.mark.asyncio
    async def test_restored_event_refreshes_snoozed_and_target(self, board, fetch_client, listener, item_factory) -> None:
        board.replace_items("snoozed", [item_factory("s", 0)])

        await listener.on_external_event(
            {"event_type": "email.restored", "item_id": "s", "to_mapping": "STARRED", "timestamp": TIMESTAMP}
        )

        assert sorted(fetch_client.fetched_mappings()) == ["Label_snoozed", "STARRED"]

    @pytest.mark.asyncio
    async def test_restored_event_without_target_refreshes_default_column(self, fetch_client, listener) -> None:
        await listener.on_external_event({"event_type": "email.restored", "item_id": "gone", "timestamp": TIMESTAMP})

        assert fetch_client.fetched_mappings() == ["Label_snoozed", "INBOX"]

    @pytest.mark.asyncio
    async def test_unknown_item_without_target_triggers_full_refresh(self, board, fetch_client, listener) -> None:
        await listener.on_external_event({"event_type": "labels.changed", "item_id": "zzz", "timestamp": TIMESTAMP})

        assert sorted(fetch_client.fetched_mappings()) == sorted(c.mapping for c in board.columns())

    @pytest.mark.asyncio
    async def test_deleted_event_for_unknown_item_is_noop(self, fetch_client, listener) -> None:
        handled = await listener.on_external_event(
            {"event_type": "email.deleted", "item_id": "zzz", "timestamp": TIMESTAMP}
        )

        assert handled is False
        assert fetch_client.calls == []

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped(self, fetch_client, listener) -> None:
        assert await listener.on_external_event({"event_type": "labels.changed"}) is False
        assert fetch_client.calls == []

    @pytest.mark.asyncio
    async def test_listen_consumes_channel_until_closed(self, fetch_client, listener) -> None:
        channel = QueuePushChannel()
        await channel.publish({"event_type": "email.deleted", "item_id": "c", "timestamp": TIMESTAMP})
        await channel.publish({"bogus": True})
        channel.close()

        await listener.listen(channel)

        assert fetch_client.fetched_mappings() == ["INBOX"]
