"""Per-column health of the labels backing the board.

A column becomes unhealthy when a sync call fails because its label is missing.
While unhealthy, cards cannot be dragged into or out of it; the user is offered a
recovery that remaps the column to an existing label or creates a new one.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from mailboard.board.scheduler import Clock, utcnow
from mailboard.board.state import Board
from mailboard.exceptions import DuplicateMappingError, MailboardError
from mailboard.models import ColumnHealth
from mailboard.sync.protocols import MappingResolver

logger = structlog.get_logger()


class RecoveryOutcome(BaseModel):
    """Result of a recovery attempt for one column."""

    model_config = ConfigDict(frozen=True)

    column_id: str
    recovered: bool
    mapping: str | None = None
    error: str | None = None


class LabelHealthMonitor:
    """Tracks which columns have a usable label."""

    def __init__(
        self,
        board: Board,
        resolver: MappingResolver,
        *,
        on_recovered: Callable[[str], Awaitable[Any]] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._board = board
        self._resolver = resolver
        self._on_recovered = on_recovered
        self._clock = clock or utcnow
        self._unhealthy: dict[str, ColumnHealth] = {}

    def mark_unhealthy(self, column_id: str, reason: str) -> ColumnHealth:
        health = ColumnHealth(
            column_id=column_id,
            healthy=False,
            reason=reason,
            detected_at=self._clock(),
        )
        self._unhealthy[column_id] = health
        logger.warning("column_marked_unhealthy", column_id=column_id, reason=reason)
        return health

    def mark_healthy(self, column_id: str) -> None:
        if self._unhealthy.pop(column_id, None) is not None:
            logger.info("column_marked_healthy", column_id=column_id)

    def is_healthy(self, column_id: str) -> bool:
        return column_id not in self._unhealthy

    def status(self, column_id: str) -> ColumnHealth:
        return self._unhealthy.get(column_id) or ColumnHealth(column_id=column_id)

    def unhealthy(self) -> list[ColumnHealth]:
        return list(self._unhealthy.values())

    def allows_drag(self, source_id: str, destination_id: str) -> bool:
        return self.is_healthy(source_id) and self.is_healthy(destination_id)

    async def attempt_recovery(
        self,
        column_id: str,
        *,
        label_name: str | None = None,
        existing_mapping: str | None = None,
        color: str | None = None,
    ) -> RecoveryOutcome:
        """Re-point an unhealthy column at a working label.

        Args:
            column_id: Column to recover.
            label_name: Name for a newly created label. Defaults to the column title.
            existing_mapping: ID or name of an existing label to remap to instead of
                creating a new one.
            color: Optional label color for newly created labels.
        """

        column = self._board.column(column_id)
        logger.info(
            "column_recovery_started",
            column_id=column_id,
            existing_mapping=existing_mapping,
            label_name=label_name,
        )

        try:
            if existing_mapping is not None:
                label = await self._resolver.resolve_mapping(existing_mapping)
                owner = self._board.column_for_mapping(label.id)
                if owner is not None and owner.id != column_id:
                    raise DuplicateMappingError(
                        f"Label '{label.name}' is already mapped to column '{owner.id}'"
                    )
            else:
                label = await self._resolver.create_mapping(label_name or column.title, color)

            self._board.update_column(column.model_copy(update={"mapping": label.id}))
        except MailboardError as exc:
            logger.warning("column_recovery_failed", column_id=column_id, error=str(exc))
            return RecoveryOutcome(column_id=column_id, recovered=False, error=str(exc))

        self.mark_healthy(column_id)
        logger.info("column_recovered", column_id=column_id, mapping=label.id)

        if self._on_recovered is not None:
            await self._on_recovered(column_id)

        return RecoveryOutcome(column_id=column_id, recovered=True, mapping=label.id)
