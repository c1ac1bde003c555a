"""Unit tests for the optimistic mutation coordinator."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from mailboard.board.coordinator import MutationCoordinator
from mailboard.board.health import LabelHealthMonitor
from mailboard.board.notices import NoticeCenter, NoticeKind
from mailboard.exceptions import InvalidMappingError, TransientSyncError
from mailboard.models import BoardAction, ErrorKind, ItemFlag, OutcomeStatus, RateLimited


class _Summaries:
    def __init__(self, result) -> None:
        self.result = result
        self.requests: list[str] = []

    async def generate_summary(self, item_id: str, force: bool = False):
        self.requests.append(item_id)
        return self.result


class _Harness:
    def __init__(self, board, sync, resolver, *, summaries=None) -> None:
        self.reconciles: list[tuple[str, ...]] = []
        self.saved: list[tuple[str, list[str]]] = []
        self.snooze_changes = 0
        self.notices = NoticeCenter()
        self.health = LabelHealthMonitor(board, resolver)
        self.coordinator = MutationCoordinator(
            board,
            sync,
            self.health,
            reconcile=self._reconcile,
            on_snoozes_changed=self._snoozes_changed,
            summaries=summaries,
            notices=self.notices,
            save_positions=self._save,
        )

    async def _reconcile(self, columns) -> None:
        self.reconciles.append(tuple(columns))

    def _snoozes_changed(self) -> None:
        self.snooze_changes += 1

    def _save(self, column_id, items) -> None:
        self.saved.append((column_id, [item.id for item in items]))


@pytest.fixture
def harness(board, sync_client, resolver) -> _Harness:
    return _Harness(board, sync_client, resolver)


def _ids(board, column_id: str) -> list[str]:
    return [item.id for item in board.snapshot(column_id).items]


class TestOptimisticApply:
    """Local state changes before the sync call resolves."""

    @pytest.mark.asyncio
    async def test_move_is_visible_before_sync_resolves(self, board, sync_client, harness) -> None:
        gate = asyncio.Event()
        sync_client.gates["move_item"] = gate

        ticket = harness.coordinator.apply(BoardAction.move("b", "todo", index=0))

        assert ticket.staged is True
        assert _ids(board, "todo") == ["b", "d"]
        assert _ids(board, "inbox") == ["a", "c"]
        assert board.find("b")[1].position == -1000
        assert not ticket.done()

        gate.set()
        outcome = await ticket

        assert outcome.ok
        assert sync_client.calls == [("move_item", "b", "STARRED", "INBOX")]
        assert [i.id for i in board.confirmed("todo").items] == ["b", "d"]
        assert harness.saved == [("todo", ["b"])]

    @pytest.mark.asyncio
    async def test_toggle_star_updates_open_detail(self, board, sync_client, harness) -> None:
        board.open_detail("a")

        ticket = harness.coordinator.apply(BoardAction.toggle_star("a"))

        assert board.detail("a").is_starred is True
        outcome = await ticket
        assert outcome.ok
        assert sync_client.calls == [("set_flag", "a", ItemFlag.STARRED, True)]

    @pytest.mark.asyncio
    async def test_archive_and_delete_remove_cards(self, board, sync_client, harness) -> None:
        board.open_detail("b")

        archive = harness.coordinator.apply(BoardAction.archive("a"))
        delete = harness.coordinator.apply(BoardAction.delete("b"))

        assert _ids(board, "inbox") == ["c"]
        assert board.detail("b") is None
        await archive
        await delete
        assert ("set_flag", "a", ItemFlag.ARCHIVED, True) in sync_client.calls
        assert ("delete_item", "b") in sync_client.calls

    @pytest.mark.asyncio
    async def test_reorder_within_column_skips_sync(self, board, sync_client, harness) -> None:
        outcome = await harness.coordinator.apply(BoardAction.move("c", "inbox", index=0))

        assert outcome.ok
        assert sync_client.calls == []
        assert _ids(board, "inbox") == ["c", "a", "b"]
        assert harness.saved == [("inbox", ["c"])]

    @pytest.mark.asyncio
    async def test_adjacent_positions_trigger_renumber(self, board, sync_client, harness, item_factory) -> None:
        board.replace_items("done", [item_factory("x", 0), item_factory("y", 1)])

        await harness.coordinator.apply(BoardAction.move("a", "done", index=1))

        assert _ids(board, "done") == ["x", "a", "y"]
        assert [i.position for i in board.snapshot("done").items] == [0, 500, 1000]
        assert harness.saved == [("done", ["x", "y", "a"])]


class TestFailures:
    """Failed sync calls roll back and reconcile."""

    @pytest.mark.asyncio
    async def test_invalid_mapping_marks_destination_and_reconciles_both_columns(
        self, board, sync_client, harness
    ) -> None:
        sync_client.failures["move_item"] = InvalidMappingError("Label not found", mapping="Label_done")

        outcome = await harness.coordinator.apply(BoardAction.move("a", "done"))

        assert outcome.status is OutcomeStatus.RECONCILED
        assert outcome.error_kind is ErrorKind.INVALID_MAPPING
        assert harness.health.is_healthy("done") is False
        assert harness.health.is_healthy("inbox") is True
        assert harness.reconciles == [("inbox", "done")]
        assert board.find("a")[0] == "inbox"

    @pytest.mark.asyncio
    async def test_transient_failure_posts_notice_and_keeps_health(self, board, sync_client, harness) -> None:
        sync_client.failures["move_item"] = TransientSyncError("timed out")

        outcome = await harness.coordinator.apply(BoardAction.move("a", "todo"))

        assert outcome.error_kind is ErrorKind.TRANSIENT
        assert harness.health.unhealthy() == []
        assert [n.kind for n in harness.notices.active()] == [NoticeKind.ERROR]
        assert harness.reconciles == [("inbox", "todo")]
        assert board.find("a")[0] == "inbox"

    @pytest.mark.asyncio
    async def test_unhealthy_column_rejects_drag_without_touching_state(
        self, board, sync_client, harness
    ) -> None:
        harness.health.mark_unhealthy("done", "Label not found")

        ticket = harness.coordinator.apply(BoardAction.move("a", "done"))

        assert ticket.done()
        assert ticket.staged is False
        outcome = ticket.result()
        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.error_kind is ErrorKind.INVALID_MAPPING
        assert _ids(board, "inbox") == ["a", "b", "c"]
        assert sync_client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_item_is_rejected(self, harness) -> None:
        outcome = await harness.coordinator.apply(BoardAction.toggle_read("missing"))

        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.error_kind is ErrorKind.CONFLICT


class TestReconciliationRace:
    """A refresh that lands while a move is in flight supersedes the whole move."""

    @pytest.mark.asyncio
    async def test_stale_refresh_of_destination_keeps_card_in_source(
        self, board, sync_client, harness, item_factory
    ) -> None:
        gate = asyncio.Event()
        sync_client.gates["move_item"] = gate
        ticket = harness.coordinator.apply(BoardAction.move("b", "todo", index=0))

        board.replace_items("todo", [item_factory("d", 0)])
        assert board.find("b")[0] == "inbox"

        gate.set()
        outcome = await ticket

        assert outcome.ok
        assert board.find("b") is not None
        assert board.find("b")[0] == "inbox"
        assert _ids(board, "todo") == ["d"]
        assert harness.reconciles == [("inbox", "todo")]
        assert harness.saved == []


class TestSerialization:
    """Actions on the same card run one after another."""

    @pytest.mark.asyncio
    async def test_second_action_waits_for_first(self, board, sync_client, harness) -> None:
        gate = asyncio.Event()
        sync_client.gates["set_flag"] = gate

        first = harness.coordinator.apply(BoardAction.toggle_star("a"))
        second = harness.coordinator.apply(BoardAction.move("a", "todo"))

        assert second.staged is False
        assert board.find("a")[0] == "inbox"
        assert harness.coordinator.in_flight("a")

        gate.set()
        await first
        outcome = await second

        assert outcome.ok
        assert sync_client.names() == ["set_flag", "move_item"]
        column_id, item = board.find("a")
        assert column_id == "todo"
        assert item.is_starred is True

    @pytest.mark.asyncio
    async def test_different_items_proceed_concurrently(self, board, sync_client, harness) -> None:
        gate = asyncio.Event()
        sync_client.gates["set_flag"] = gate

        star = harness.coordinator.apply(BoardAction.toggle_star("a"))
        move = harness.coordinator.apply(BoardAction.move("b", "done"))

        assert move.staged is True
        await move
        assert not star.done()

        gate.set()
        await star


class TestSnoozes:
    """Snooze and unsnooze move cards through the snoozed column."""

    @pytest.mark.asyncio
    async def test_snooze_moves_card_and_reschedules(self, board, sync_client, harness) -> None:
        until = datetime(2030, 1, 1, tzinfo=timezone.utc)

        ticket = harness.coordinator.apply(BoardAction.snooze("a", until))

        column_id, item = board.find("a")
        assert column_id == "snoozed"
        assert item.snooze_until == until
        assert harness.snooze_changes == 1

        await ticket
        assert sync_client.calls == [("snooze_item", "a", until, "INBOX")]

    @pytest.mark.asyncio
    async def test_plain_move_into_snoozed_column_is_rejected(self, board, sync_client, harness) -> None:
        outcome = await harness.coordinator.apply(BoardAction.move("a", "snoozed"))

        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.error_kind is ErrorKind.CONFLICT
        assert board.find("a")[0] == "inbox"
        assert sync_client.calls == []

    @pytest.mark.asyncio
    async def test_unsnooze_lands_on_top_of_default_column(self, board, sync_client, harness, item_factory) -> None:
        until = datetime(2030, 1, 1, tzinfo=timezone.utc)
        board.replace_items("snoozed", [item_factory("s", 0, snooze_until=until)])

        outcome = await harness.coordinator.apply(BoardAction.unsnooze("s"))

        assert outcome.ok
        assert _ids(board, "inbox")[0] == "s"
        assert board.find("s")[1].snooze_until is None
        assert sync_client.calls == [("unsnooze_item", "s")]

    @pytest.mark.asyncio
    async def test_unsnooze_of_awake_card_is_rejected(self, harness) -> None:
        outcome = await harness.coordinator.apply(BoardAction.unsnooze("a"))

        assert outcome.status is OutcomeStatus.REJECTED
        assert outcome.error_kind is ErrorKind.CONFLICT


class TestSummaries:
    """Leaving the default column fetches a summary in the background."""

    @pytest.mark.asyncio
    async def test_summary_attached_after_move_out_of_inbox(self, board, sync_client, resolver) -> None:
        summaries = _Summaries("Invoice due Friday")
        harness = _Harness(board, sync_client, resolver, summaries=summaries)

        await harness.coordinator.apply(BoardAction.move("a", "done"))
        await harness.coordinator.drain()

        assert summaries.requests == ["a"]
        assert board.find("a")[1].summary == "Invoice due Friday"

    @pytest.mark.asyncio
    async def test_no_summary_for_moves_between_other_columns(self, board, sync_client, resolver) -> None:
        summaries = _Summaries("unused")
        harness = _Harness(board, sync_client, resolver, summaries=summaries)

        await harness.coordinator.apply(BoardAction.move("d", "done"))
        await harness.coordinator.drain()

        assert summaries.requests == []

    @pytest.mark.asyncio
    async def test_rate_limited_summary_posts_auto_clearing_notice(self, board, sync_client, resolver) -> None:
        harness = _Harness(board, sync_client, resolver, summaries=_Summaries(RateLimited(retry_after=30)))

        await harness.coordinator.apply(BoardAction.move("a", "done"))
        await harness.coordinator.drain()

        notices = harness.notices.active()
        assert [n.kind for n in notices] == [NoticeKind.INFO]
        assert notices[0].expires_at is not None
        assert board.find("a")[1].summary is None
