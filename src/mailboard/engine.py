"""Board engine: builds the components and connects them to each other.

The engine owns one ``Board`` and the components that act on it. Reads go
through ``refresh``/``load_more``; writes go through ``apply``; column
configuration changes are persisted to the store as they happen.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

import structlog

from mailboard.board.coordinator import MutationCoordinator, MutationTicket
from mailboard.board.health import LabelHealthMonitor, RecoveryOutcome
from mailboard.board.notices import Notice, NoticeCenter
from mailboard.board.reconciler import ReconciliationListener
from mailboard.board.scheduler import CallLater, Clock, SnoozeScheduler
from mailboard.board.state import Board, ColumnSnapshot
from mailboard.config import Settings
from mailboard.models import BoardAction, BoardColumn, BoardItem, ColumnView, PushEvent, default_columns
from mailboard.store.repository import BoardStore
from mailboard.sync.protocols import FetchClient, MappingResolver, PushChannel, SummaryCache, SyncClient

logger = structlog.get_logger()


class BoardEngine:
    """A synchronized workflow board over one mailbox."""

    def __init__(
        self,
        columns: Sequence[BoardColumn],
        *,
        sync: SyncClient,
        fetch: FetchClient,
        resolver: MappingResolver,
        store: BoardStore | None = None,
        summaries: SummaryCache | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        call_later: CallLater | None = None,
    ) -> None:
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        self._store = store
        self._resolver = resolver
        gap = self.settings.position_gap

        self.board = Board(columns)
        self.notices = NoticeCenter(ttl=timedelta(seconds=self.settings.notice_ttl_seconds), clock=clock)
        self.health = LabelHealthMonitor(
            self.board,
            resolver,
            on_recovered=self._on_recovered,
            clock=clock,
        )
        self.scheduler = SnoozeScheduler(
            self._on_snooze_wake,
            buffer=timedelta(seconds=self.settings.snooze_buffer_seconds),
            clock=clock,
            call_later=call_later,
        )
        self.listener = ReconciliationListener(
            self.board,
            fetch,
            health=self.health,
            load_positions=store.get_positions if store is not None else None,
            save_positions=store.save_positions if store is not None else None,
            on_refreshed=self.reschedule_snoozes,
            gap=gap,
            dedupe_size=self.settings.event_dedupe_size,
        )
        self.coordinator = MutationCoordinator(
            self.board,
            sync,
            self.health,
            reconcile=self.listener.refresh,
            on_snoozes_changed=self.reschedule_snoozes,
            summaries=summaries,
            notices=self.notices,
            save_positions=store.save_positions if store is not None else None,
            gap=gap,
        )
        self._listen_task: asyncio.Task[None] | None = None

    @classmethod
    async def create(
        cls,
        *,
        sync: SyncClient,
        fetch: FetchClient,
        resolver: MappingResolver,
        store: BoardStore | None = None,
        summaries: SummaryCache | None = None,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "BoardEngine":
        """Build an engine from saved column configuration, creating defaults if none.

        Default columns need the "Done" and snooze labels; they are looked up by name
        and created when missing.
        """

        from mailboard.config import get_settings

        settings = settings or get_settings()
        columns = store.load_columns() if store is not None else []
        if not columns:
            done = await resolver.create_mapping("Done")
            snoozed = await resolver.create_mapping(settings.snooze_label_name)
            columns = default_columns(done_mapping=done.id, snooze_mapping=snoozed.id)
            if store is not None:
                store.save_columns(columns)
            logger.info("default_columns_created", done_mapping=done.id, snooze_mapping=snoozed.id)

        return cls(
            columns,
            sync=sync,
            fetch=fetch,
            resolver=resolver,
            store=store,
            summaries=summaries,
            settings=settings,
            **kwargs,
        )

    # Lifecycle

    async def start(self, channel: PushChannel | None = None) -> dict[str, bool]:
        """Load every column and start consuming ``channel`` if given."""

        results = await self.listener.refresh()
        if channel is not None and self._listen_task is None:
            self._listen_task = asyncio.create_task(self.listener.listen(channel))
        logger.info("board_engine_started", columns=len(results), listening=channel is not None)
        return results

    async def stop(self) -> None:
        await self.scheduler.close()
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        await self.coordinator.drain()
        logger.info("board_engine_stopped")

    # Reads

    def columns(self) -> list[BoardColumn]:
        return self.board.columns()

    def snapshot(self, column_id: str) -> ColumnSnapshot:
        return self.board.snapshot(column_id)

    def open_detail(self, item_id: str) -> BoardItem | None:
        return self.board.open_detail(item_id)

    def close_detail(self, item_id: str) -> None:
        self.board.close_detail(item_id)

    def active_notices(self) -> list[Notice]:
        return self.notices.active()

    async def refresh(self, scope: Sequence[str] | None = None) -> dict[str, bool]:
        return await self.listener.refresh(scope)

    async def load_more(self, column_id: str) -> int:
        return await self.listener.load_more(column_id)

    async def on_external_event(self, event: PushEvent | dict[str, Any]) -> bool:
        return await self.listener.on_external_event(event)

    # Writes

    def apply(self, action: BoardAction) -> MutationTicket:
        return self.coordinator.apply(action)

    async def recover_column(
        self,
        column_id: str,
        *,
        label_name: str | None = None,
        existing_mapping: str | None = None,
        color: str | None = None,
    ) -> RecoveryOutcome:
        return await self.health.attempt_recovery(
            column_id,
            label_name=label_name,
            existing_mapping=existing_mapping,
            color=color,
        )

    # Column configuration

    async def add_column(
        self,
        title: str,
        *,
        mapping: str | None = None,
        color: str | None = None,
    ) -> BoardColumn:
        """Add a column, optionally backed by an existing label (ID or name).

        Raises:
            InvalidMappingError: If ``mapping`` names no label.
            DuplicateMappingError: If the label already backs another column.
        """

        label_id = None
        if mapping is not None:
            label_id = (await self._resolver.resolve_mapping(mapping)).id

        existing = self.board.columns()
        column = BoardColumn(
            id=self._column_id_for(title),
            title=title,
            mapping=label_id,
            order=max((c.order for c in existing), default=-1) + 1,
            **({"color": color} if color else {}),
        )
        self.board.add_column(column)
        self._save_columns()

        if label_id is not None:
            await self.listener.refresh([column.id])
        return column

    def rename_column(self, column_id: str, title: str) -> BoardColumn:
        column = self.board.column(column_id).model_copy(update={"title": title})
        self.board.update_column(column)
        self._save_columns()
        return column

    def update_view(self, column_id: str, view: ColumnView) -> BoardColumn:
        column = self.board.column(column_id).model_copy(update={"view": view})
        self.board.update_column(column)
        self._save_columns()
        return column

    async def delete_column(self, column_id: str) -> int:
        """Delete a non-system column, moving its cards to the default column.

        Returns:
            Number of cards re-homed.

        Raises:
            SystemColumnError: For system columns.
        """

        orphans = self.board.remove_column(column_id)
        self.health.mark_healthy(column_id)
        default_id = self.board.default_column_id
        if orphans:
            current = self.board.confirmed(default_id)
            last = max(current.positions, default=-self.settings.position_gap)
            rehomed = []
            for item in orphans:
                last += self.settings.position_gap
                rehomed.append(item.model_copy(update={"position": last}))
            self.board.append_items(default_id, rehomed, next_page_token=current.load.next_page_token)

        self._save_columns()
        await self.listener.refresh([default_id])
        logger.info("column_deleted", column_id=column_id, rehomed=len(orphans))
        return len(orphans)

    def reorder_columns(self, column_ids: Sequence[str]) -> None:
        self.board.reorder_columns(column_ids)
        self._save_columns()

    # Wiring

    def reschedule_snoozes(self) -> None:
        self.scheduler.reschedule(self.board.pending_snoozes())

    async def _on_snooze_wake(self) -> None:
        logger.info("snooze_wake_reconcile")
        await self.listener.refresh()

    async def _on_recovered(self, column_id: str) -> None:
        self._save_columns()
        await self.listener.refresh([column_id])

    def _save_columns(self) -> None:
        if self._store is not None:
            self._store.save_columns(self.board.columns())

    def _column_id_for(self, title: str) -> str:
        base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-") or "column"
        candidate, suffix = base, 2
        while self.board.has_column(candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate
