"""Optimistic mutation coordinator.

Every action is applied to the board synchronously as tentative state, then
written to the mail store in a background task. Success collapses the tentative
state into the confirmed state; failure discards it and reconciles the affected
columns from the mail store. Actions on the same card are chained so each one
computes its baseline after the previous sync call has resolved.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Generator, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from mailboard.board.health import LabelHealthMonitor
from mailboard.board.notices import NoticeCenter, NoticeKind
from mailboard.board.positions import GAP, allocate, needs_renumber, renumber
from mailboard.board.state import Board, Patch, PutItem, RemoveItem, ReplaceItems
from mailboard.exceptions import (
    ColumnNotFoundError,
    InvalidMappingError,
    RenumberRequired,
    TransientSyncError,
)
from mailboard.models import (
    ActionKind,
    BoardAction,
    BoardItem,
    ErrorKind,
    ItemFlag,
    MutationOutcome,
    OutcomeStatus,
    RateLimited,
)
from mailboard.sync.protocols import SummaryCache, SyncClient

logger = structlog.get_logger()

Reconcile = Callable[[Sequence[str]], Awaitable[Any]]
SavePositions = Callable[[str, Sequence[BoardItem]], None]


class _Rejected(Exception):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class _Staged:
    mutation_id: int
    action: BoardAction
    item: BoardItem
    source_id: str
    destination_id: str | None
    columns: tuple[str, ...]
    call: Callable[[], Awaitable[None]] | None
    placed: list[BoardItem] = field(default_factory=list)
    touches_snoozes: bool = False

    @property
    def blamed_column(self) -> str:
        return self.destination_id or self.source_id


class MutationTicket:
    """Handle for an applied action; await it for the ``MutationOutcome``.

    ``staged`` is True when the local board already reflects the action at the time
    ``apply`` returned. It is False for rejected actions and for actions queued
    behind an in-flight mutation of the same card.
    """

    def __init__(self, action: BoardAction, future: asyncio.Future[MutationOutcome], staged: bool) -> None:
        self.action = action
        self.staged = staged
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> MutationOutcome:
        return self._future.result()

    def __await__(self) -> Generator[Any, None, MutationOutcome]:
        return self._future.__await__()


class MutationCoordinator:
    """Applies board actions optimistically and reconciles on failure."""

    def __init__(
        self,
        board: Board,
        sync: SyncClient,
        health: LabelHealthMonitor,
        *,
        reconcile: Reconcile,
        on_snoozes_changed: Callable[[], None] | None = None,
        summaries: SummaryCache | None = None,
        notices: NoticeCenter | None = None,
        save_positions: SavePositions | None = None,
        gap: int = GAP,
    ) -> None:
        self._board = board
        self._sync = sync
        self._health = health
        self._reconcile = reconcile
        self._on_snoozes_changed = on_snoozes_changed
        self._summaries = summaries
        self._notices = notices
        self._save_positions = save_positions
        self._gap = gap
        self._ids = itertools.count(1)
        self._inflight: dict[str, asyncio.Task[MutationOutcome]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def apply(self, action: BoardAction) -> MutationTicket:
        """Apply ``action`` to the board and start syncing it.

        When no other mutation of the same card is in flight, the board reflects the
        action before this method returns. Never raises for sync failures; the
        ticket resolves to an outcome describing what happened.
        """

        loop = asyncio.get_running_loop()
        previous = self._inflight.get(action.item_id)

        if previous is None or previous.done():
            try:
                staged = self._stage(action)
            except _Rejected as exc:
                future: asyncio.Future[MutationOutcome] = loop.create_future()
                future.set_result(self._rejected(action, exc))
                return MutationTicket(action, future, staged=False)
            task = loop.create_task(self._run(staged))
            is_staged = True
        else:
            logger.debug("mutation_queued", item_id=action.item_id, kind=action.kind.value)
            task = loop.create_task(self._run_after(previous, action))
            is_staged = False

        self._inflight[action.item_id] = task
        task.add_done_callback(lambda done, item_id=action.item_id: self._forget(item_id, done))
        return MutationTicket(action, task, staged=is_staged)

    async def drain(self) -> None:
        """Wait for every in-flight mutation and background summary request."""

        while self._inflight or self._background:
            await asyncio.gather(*self._inflight.values(), *self._background, return_exceptions=True)

    def in_flight(self, item_id: str) -> bool:
        task = self._inflight.get(item_id)
        return task is not None and not task.done()

    # Staging

    def _stage(self, action: BoardAction) -> _Staged:
        found = self._board.find(action.item_id)
        if found is None:
            raise _Rejected(ErrorKind.CONFLICT, f"Item '{action.item_id}' is not on the board")
        source_id, item = found
        source = self._board.column(source_id)
        mutation_id = next(self._ids)

        if action.kind is ActionKind.MOVE:
            if action.to_column == self._board.snoozed_column_id and source_id != action.to_column:
                raise _Rejected(ErrorKind.CONFLICT, "Cards enter the snoozed column only by snoozing them")
            staged = self._stage_move(mutation_id, action, item, source_id, action.to_column or "")
            if staged.destination_id != source_id:
                destination = self._board.column(staged.destination_id or "")
                staged.call = lambda: self._sync.move_item(
                    item.id, item.thread_id, destination.mapping, source_mapping=source.mapping
                )

        elif action.kind in (ActionKind.TOGGLE_STAR, ActionKind.TOGGLE_READ):
            if action.kind is ActionKind.TOGGLE_STAR:
                updated = item.model_copy(update={"is_starred": not item.is_starred})
                flag, value = ItemFlag.STARRED, updated.is_starred
            else:
                updated = item.model_copy(update={"is_unread": not item.is_unread})
                flag, value = ItemFlag.UNREAD, updated.is_unread
            self._board.stage(mutation_id, {source_id: [PutItem(updated)]})
            self._board.update_detail(updated)
            staged = _Staged(
                mutation_id, action, item, source_id, None, (source_id,),
                call=lambda: self._sync.set_flag(item.id, flag, value),
            )

        elif action.kind is ActionKind.ARCHIVE:
            self._board.stage(mutation_id, {source_id: [RemoveItem(item.id)]})
            archived = item.model_copy(
                update={"label_ids": tuple(label for label in item.label_ids if label != "INBOX")}
            )
            self._board.update_detail(archived)
            staged = _Staged(
                mutation_id, action, item, source_id, None, (source_id,),
                call=lambda: self._sync.set_flag(item.id, ItemFlag.ARCHIVED, True),
            )

        elif action.kind is ActionKind.DELETE:
            self._board.stage(mutation_id, {source_id: [RemoveItem(item.id)]})
            self._board.close_detail(item.id)
            staged = _Staged(
                mutation_id, action, item, source_id, None, (source_id,),
                call=lambda: self._sync.delete_item(item.id),
            )

        elif action.kind is ActionKind.SNOOZE:
            snoozed_id = self._board.snoozed_column_id
            if snoozed_id is None:
                raise _Rejected(ErrorKind.CONFLICT, "Board has no snoozed column")
            until = action.until
            staged = self._stage_move(
                mutation_id, action, item, source_id, snoozed_id, snooze_until=until
            )
            staged.touches_snoozes = True
            staged.call = lambda: self._sync.snooze_item(
                item.id, item.thread_id, until, source_mapping=source.mapping
            )

        else:
            if item.snooze_until is None and source_id != self._board.snoozed_column_id:
                raise _Rejected(ErrorKind.CONFLICT, f"Item '{item.id}' is not snoozed")
            staged = self._stage_move(
                mutation_id, action, item, source_id, self._board.default_column_id,
                index=0, snooze_until=None,
            )
            staged.touches_snoozes = True
            staged.call = lambda: self._sync.unsnooze_item(item.id)

        logger.info(
            "mutation_staged",
            mutation_id=mutation_id,
            kind=action.kind.value,
            item_id=item.id,
            source=source_id,
            destination=staged.destination_id,
        )
        if staged.touches_snoozes:
            self._snoozes_changed()
        return staged

    def _stage_move(
        self,
        mutation_id: int,
        action: BoardAction,
        item: BoardItem,
        source_id: str,
        destination_id: str,
        *,
        index: int | None = None,
        snooze_until: Any = ...,
    ) -> _Staged:
        if not self._board.has_column(destination_id):
            raise _Rejected(ErrorKind.CONFLICT, f"Column '{destination_id}' is not on the board")
        if not self._health.allows_drag(source_id, destination_id):
            blocked = source_id if not self._health.is_healthy(source_id) else destination_id
            raise _Rejected(
                ErrorKind.INVALID_MAPPING,
                f"Column '{blocked}' has a missing label; recover it before moving cards",
            )

        if index is None:
            index = action.index

        destination = self._board.snapshot(destination_id)
        neighbors = [existing for existing in destination.items if existing.id != item.id]
        if index is None:
            index = len(neighbors)

        patches: list[Patch] = []
        placed: list[BoardItem] = []
        if needs_renumber([existing.position for existing in neighbors]):
            neighbors = renumber(neighbors, self._gap)
            patches.append(ReplaceItems(tuple(neighbors)))
            placed.extend(neighbors)

        positions = [existing.position for existing in neighbors if existing.position is not None]
        try:
            position = allocate(positions, index, self._gap)
        except RenumberRequired as exc:
            logger.info(
                "column_renumbered",
                column_id=destination_id,
                previous=exc.previous,
                following=exc.following,
            )
            neighbors = renumber(neighbors, self._gap)
            patches.append(ReplaceItems(tuple(neighbors)))
            placed = list(neighbors)
            position = allocate([existing.position for existing in neighbors], index, self._gap)

        update: dict[str, Any] = {"position": position, "column_id": destination_id}
        if snooze_until is not ...:
            update["snooze_until"] = snooze_until
        moved = item.model_copy(update=update)
        patches.append(PutItem(moved))
        placed.append(moved)

        staged_patches: dict[str, list[Patch]] = {destination_id: patches}
        columns: tuple[str, ...] = (destination_id,)
        if source_id != destination_id:
            staged_patches = {source_id: [RemoveItem(item.id)], **staged_patches}
            columns = (source_id, destination_id)

        self._board.stage(mutation_id, staged_patches)
        self._board.update_detail(moved)
        return _Staged(
            mutation_id, action, item, source_id, destination_id, columns, call=None, placed=placed
        )

    # Syncing

    async def _run_after(self, previous: asyncio.Task[MutationOutcome], action: BoardAction) -> MutationOutcome:
        await asyncio.wait([previous])
        try:
            staged = self._stage(action)
        except _Rejected as exc:
            return self._rejected(action, exc)
        return await self._run(staged)

    async def _run(self, staged: _Staged) -> MutationOutcome:
        try:
            if staged.call is not None:
                await staged.call()
        except InvalidMappingError as exc:
            column_id = staged.blamed_column
            self._health.mark_unhealthy(column_id, str(exc))
            return await self._fail(staged, ErrorKind.INVALID_MAPPING, exc)
        except TransientSyncError as exc:
            if self._notices is not None:
                self._notices.post(
                    f"Could not {staged.action.kind.value.replace('_', ' ')} the message: {exc}",
                    kind=NoticeKind.ERROR,
                    column_id=staged.source_id,
                )
            return await self._fail(staged, ErrorKind.TRANSIENT, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("mutation_sync_failed", mutation_id=staged.mutation_id, error=str(exc))
            return await self._fail(staged, ErrorKind.CONFLICT, exc)

        if not self._board.commit(staged.mutation_id, staged.columns):
            logger.info(
                "mutation_superseded",
                mutation_id=staged.mutation_id,
                kind=staged.action.kind.value,
                item_id=staged.item.id,
            )
            if staged.touches_snoozes:
                self._snoozes_changed()
            await self._reconcile_quietly(staged)
            return MutationOutcome(action=staged.action, status=OutcomeStatus.CONFIRMED)

        if staged.placed and staged.destination_id is not None and self._save_positions is not None:
            self._save_positions(staged.destination_id, staged.placed)

        logger.info(
            "mutation_confirmed",
            mutation_id=staged.mutation_id,
            kind=staged.action.kind.value,
            item_id=staged.item.id,
        )

        if self._summaries is not None and self._wants_summary(staged):
            self._spawn(self._fill_summary(self._summaries, staged.item.id))

        return MutationOutcome(action=staged.action, status=OutcomeStatus.CONFIRMED)

    async def _fail(self, staged: _Staged, kind: ErrorKind, exc: Exception) -> MutationOutcome:
        logger.warning(
            "mutation_rolled_back",
            mutation_id=staged.mutation_id,
            kind=staged.action.kind.value,
            item_id=staged.item.id,
            error_kind=kind.value,
            error=str(exc),
        )
        self._board.discard(staged.mutation_id, staged.columns)
        if staged.touches_snoozes:
            self._snoozes_changed()

        await self._reconcile_quietly(staged)

        return MutationOutcome(
            action=staged.action,
            status=OutcomeStatus.RECONCILED,
            error_kind=kind,
            error=str(exc),
        )

    async def _reconcile_quietly(self, staged: _Staged) -> None:
        try:
            await self._reconcile(staged.columns)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "mutation_reconcile_failed",
                mutation_id=staged.mutation_id,
                error=str(exc),
            )

    def _rejected(self, action: BoardAction, exc: _Rejected) -> MutationOutcome:
        logger.info("mutation_rejected", item_id=action.item_id, kind=action.kind.value, reason=str(exc))
        return MutationOutcome(
            action=action,
            status=OutcomeStatus.REJECTED,
            error_kind=exc.kind,
            error=str(exc),
        )

    def _forget(self, item_id: str, task: asyncio.Task[MutationOutcome]) -> None:
        if self._inflight.get(item_id) is task:
            del self._inflight[item_id]

    def _snoozes_changed(self) -> None:
        if self._on_snoozes_changed is not None:
            self._on_snoozes_changed()

    # Summaries

    def _wants_summary(self, staged: _Staged) -> bool:
        if staged.action.kind is not ActionKind.MOVE:
            return False
        default_id = self._board.default_column_id
        return (
            staged.source_id == default_id
            and staged.destination_id not in (None, default_id)
            and not staged.item.summary
        )

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _fill_summary(self, summaries: SummaryCache, item_id: str) -> None:
        try:
            result = await summaries.generate_summary(item_id, force=False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("summary_generation_failed", item_id=item_id, error=str(exc))
            return

        if isinstance(result, RateLimited):
            logger.info("summary_rate_limited", item_id=item_id, retry_after=result.retry_after)
            if self._notices is not None:
                self._notices.post(
                    "Summaries are rate limited; try again shortly",
                    kind=NoticeKind.INFO,
                    auto_clear=True,
                )
            return

        found = self._board.find(item_id)
        if found is None:
            return
        column_id, current = found
        updated = current.model_copy(update={"summary": result})
        mutation_id = next(self._ids)
        self._board.stage(mutation_id, {column_id: [PutItem(updated)]})
        self._board.commit(mutation_id, [column_id])
        self._board.update_detail(updated)
        logger.info("summary_attached", item_id=item_id, column_id=column_id)
