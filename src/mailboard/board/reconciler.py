"""Reconciliation of the board with the mail store.

The listener replaces local column contents with freshly fetched truth. It is
driven by push channel events, by the snooze timer, by failed mutations and by
label recovery. Columns refresh independently: one column failing to load never
blanks another.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, defaultdict
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from mailboard.board.health import LabelHealthMonitor
from mailboard.board.positions import GAP, needs_renumber, renumber
from mailboard.board.state import Board
from mailboard.exceptions import InvalidMappingError
from mailboard.models import (
    BoardItem,
    ColumnLoad,
    ItemDeletedEvent,
    ItemRestoredEvent,
    LabelsChangedEvent,
    LoadState,
    PushEvent,
    parse_push_event,
)
from mailboard.sync.protocols import FetchClient, PushChannel

logger = structlog.get_logger()

LoadPositions = Callable[[str], dict[str, int]]
SavePositions = Callable[[str, Sequence[BoardItem]], None]


class ReconciliationListener:
    """Refreshes columns from the mail store and reacts to push events."""

    def __init__(
        self,
        board: Board,
        fetch: FetchClient,
        *,
        health: LabelHealthMonitor | None = None,
        load_positions: LoadPositions | None = None,
        save_positions: SavePositions | None = None,
        on_refreshed: Callable[[], None] | None = None,
        gap: int = GAP,
        dedupe_size: int = 1024,
    ) -> None:
        self._board = board
        self._fetch = fetch
        self._health = health
        self._load_positions = load_positions
        self._save_positions = save_positions
        self._on_refreshed = on_refreshed
        self._gap = gap
        self._dedupe_size = dedupe_size
        self._seen: OrderedDict[tuple[Any, ...], None] = OrderedDict()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def refresh(self, scope: Iterable[str] | None = None) -> dict[str, bool]:
        """Re-fetch columns from the mail store.

        Args:
            scope: Column IDs to refresh. None reloads every column.

        Returns:
            Mapping of column ID to whether it loaded successfully.
        """

        if scope is None:
            column_ids = [column.id for column in self._board.columns()]
        else:
            column_ids = [c for c in dict.fromkeys(scope) if self._board.has_column(c)]

        default_id = self._board.default_column_id
        others = [c for c in column_ids if c != default_id]
        logger.info("refresh_started", columns=column_ids, full=scope is None)

        # The default column goes last so it can skip cards already shown elsewhere.
        outcomes = await asyncio.gather(*(self._refresh_column(c) for c in others))
        results = dict(zip(others, outcomes))
        if default_id in column_ids:
            results[default_id] = await self._refresh_column(default_id)

        if self._on_refreshed is not None:
            self._on_refreshed()

        failed = [c for c, ok in results.items() if not ok]
        logger.info("refresh_completed", columns=column_ids, failed=failed)
        return results

    async def load_more(self, column_id: str) -> int:
        """Append the next page of a column. Returns the number of new cards."""

        column = self._board.column(column_id)
        async with self._locks[column_id]:
            current = self._board.confirmed(column_id)
            token = current.load.next_page_token
            if column.mapping is None or not token:
                return 0

            self._board.set_load(column_id, current.load.model_copy(update={"state": LoadState.LOADING}))
            try:
                page = await self._fetch.list_column(column.mapping, token)
            except Exception as exc:  # noqa: BLE001
                logger.warning("column_load_more_failed", column_id=column_id, error=str(exc))
                self._board.set_load(
                    column_id,
                    ColumnLoad(state=LoadState.ERROR, error=str(exc), next_page_token=token),
                )
                return 0

            known = {item.id for item in current.items}
            fresh = [item for item in self._claimable(column_id, page.items) if item.id not in known]
            last = max(current.positions, default=-self._gap)
            placed = []
            for item in fresh:
                last += self._gap
                placed.append(item.model_copy(update={"position": last}))

            self._board.append_items(column_id, placed, next_page_token=page.next_page_token)
            self._persist(column_id, placed)

        logger.info("column_page_appended", column_id=column_id, count=len(placed))
        return len(placed)

    async def on_external_event(self, event: PushEvent | dict[str, Any]) -> bool:
        """Handle one push event.

        Returns:
            True if the event caused a refresh, False if it was invalid, a duplicate,
            or had nothing to reconcile.
        """

        if isinstance(event, dict):
            try:
                event = parse_push_event(event)
            except ValidationError as exc:
                logger.warning("push_event_invalid", error=str(exc))
                return False

        key = event.dedupe_key
        if key in self._seen:
            logger.debug("push_event_duplicate", event_type=event.event_type, item_id=event.item_id)
            return False
        self._remember(key)

        scope = self._scope_for(event)
        logger.info(
            "push_event_received",
            event_type=event.event_type,
            item_id=event.item_id,
            scope=scope,
        )
        if scope is None:
            return False

        await self.refresh(scope or None)
        return True

    async def listen(self, channel: PushChannel) -> None:
        """Consume a push channel until it ends."""

        logger.info("push_listener_started")
        async for payload in channel:
            try:
                await self.on_external_event(payload)
            except Exception as exc:  # noqa: BLE001
                logger.exception("push_event_failed", error=str(exc))
        logger.info("push_listener_stopped")

    # Internals

    def _scope_for(self, event: PushEvent) -> list[str] | None:
        """Columns affected by ``event``; empty means everything, None means nothing."""

        found = self._board.find(event.item_id)
        scope: list[str] = [found[0]] if found else []

        if isinstance(event, ItemRestoredEvent):
            snoozed_id = self._board.snoozed_column_id
            if snoozed_id is not None:
                scope.append(snoozed_id)
            target = self._board.column_for_mapping(event.to_mapping)
            scope.append(target.id if target else self._board.default_column_id)
        elif isinstance(event, LabelsChangedEvent):
            target = self._board.column_for_mapping(event.to_mapping)
            if target is not None:
                scope.append(target.id)
        elif isinstance(event, ItemDeletedEvent):
            if found is None:
                return None

        return list(dict.fromkeys(scope))

    def _remember(self, key: tuple[Any, ...]) -> None:
        self._seen[key] = None
        while len(self._seen) > self._dedupe_size:
            self._seen.popitem(last=False)

    async def _refresh_column(self, column_id: str) -> bool:
        column = self._board.column(column_id)
        if column.mapping is None:
            logger.debug("column_refresh_skipped_local", column_id=column_id)
            return True

        async with self._locks[column_id]:
            current = self._board.confirmed(column_id).load
            self._board.set_load(column_id, current.model_copy(update={"state": LoadState.LOADING}))
            try:
                page = await self._fetch.list_column(column.mapping)
            except InvalidMappingError as exc:
                if self._health is not None:
                    self._health.mark_unhealthy(column_id, str(exc))
                self._board.set_load(column_id, ColumnLoad(state=LoadState.ERROR, error=str(exc)))
                return False
            except Exception as exc:  # noqa: BLE001
                logger.warning("column_refresh_failed", column_id=column_id, error=str(exc))
                self._board.set_load(column_id, ColumnLoad(state=LoadState.ERROR, error=str(exc)))
                return False

            items = self._place(column_id, self._claimable(column_id, page.items))
            self._board.replace_items(column_id, items, next_page_token=page.next_page_token)

        logger.info("column_refreshed", column_id=column_id, count=len(items))
        return True

    def _claimable(self, column_id: str, items: Sequence[BoardItem]) -> list[BoardItem]:
        if column_id != self._board.default_column_id:
            return list(items)
        elsewhere = {
            item.id
            for snapshot in self._board.snapshots()
            if snapshot.column.id != column_id
            for item in snapshot.items
        }
        return [item for item in items if item.id not in elsewhere]

    def _place(self, column_id: str, items: list[BoardItem]) -> list[BoardItem]:
        """Give fetched cards their stored positions, appending unknown ones."""

        stored = self._load_positions(column_id) if self._load_positions else {}
        current = {
            item.id: item.position
            for item in self._board.confirmed(column_id).items
            if item.position is not None
        }
        known: list[tuple[int, int, BoardItem]] = []
        unknown: list[BoardItem] = []
        for order, item in enumerate(items):
            position = stored.get(item.id, current.get(item.id))
            if position is None:
                unknown.append(item)
            else:
                known.append((position, order, item))

        known.sort(key=lambda entry: (entry[0], entry[1]))
        placed = [item.model_copy(update={"position": position}) for position, _, item in known]
        if not placed or needs_renumber([item.position for item in placed]):
            result = renumber(placed + unknown, self._gap)
            self._persist(column_id, result)
            return result

        last = placed[-1].position or 0
        appended = []
        for item in unknown:
            last += self._gap
            appended.append(item.model_copy(update={"position": last}))
        self._persist(column_id, appended)
        return placed + appended

    def _persist(self, column_id: str, items: Sequence[BoardItem]) -> None:
        if items and self._save_positions is not None:
            self._save_positions(column_id, items)
