"""In-memory board state.

The board is the single shared resource of the engine. Each column is held as an
immutable ``ColumnSnapshot`` inside a ``TrackedColumn`` which separates the
confirmed state (last known truth from the mail store plus committed mutations)
from tentative patches staged by in-flight mutations. Readers only ever see whole
snapshots.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace

import structlog

from mailboard.exceptions import ColumnNotFoundError, DuplicateMappingError, SystemColumnError
from mailboard.models import (
    DEFAULT_COLUMN_ID,
    SNOOZED_COLUMN_ID,
    BoardColumn,
    BoardItem,
    ColumnLoad,
    LoadState,
    SnoozeEntry,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ColumnSnapshot:
    """One column and its cards in display order."""

    column: BoardColumn
    items: tuple[BoardItem, ...] = ()
    load: ColumnLoad = field(default_factory=ColumnLoad)

    @property
    def positions(self) -> list[int]:
        return [item.position for item in self.items if item.position is not None]

    def get(self, item_id: str) -> BoardItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def index_of(self, item_id: str) -> int | None:
        for index, item in enumerate(self.items):
            if item.id == item_id:
                return index
        return None

    def without(self, item_ids: Iterable[str]) -> "ColumnSnapshot":
        drop = set(item_ids)
        if not drop:
            return self
        kept = tuple(item for item in self.items if item.id not in drop)
        if len(kept) == len(self.items):
            return self
        return replace(self, items=kept)

    def with_item(self, item: BoardItem) -> "ColumnSnapshot":
        """Insert or replace ``item``, keeping cards sorted by position."""

        item = item.model_copy(update={"column_id": self.column.id})
        others = [existing for existing in self.items if existing.id != item.id]
        if item.position is None:
            others.append(item)
        else:
            keys = [existing.position if existing.position is not None else 0 for existing in others]
            others.insert(bisect.bisect_right(keys, item.position), item)
        return replace(self, items=tuple(others))

    def with_items(self, items: Sequence[BoardItem]) -> "ColumnSnapshot":
        return replace(
            self,
            items=tuple(item.model_copy(update={"column_id": self.column.id}) for item in items),
        )

    def visible(self) -> list[BoardItem]:
        """Cards as the column's view configuration displays them."""

        return self.column.view.apply(self.items)


@dataclass(frozen=True)
class RemoveItem:
    """Patch removing a card from a column."""

    item_id: str

    def apply(self, snapshot: ColumnSnapshot) -> ColumnSnapshot:
        return snapshot.without([self.item_id])


@dataclass(frozen=True)
class PutItem:
    """Patch inserting or replacing a card in a column."""

    item: BoardItem

    def apply(self, snapshot: ColumnSnapshot) -> ColumnSnapshot:
        return snapshot.with_item(self.item)


@dataclass(frozen=True)
class ReplaceItems:
    """Patch replacing the full card list of a column (used by renumbering)."""

    items: tuple[BoardItem, ...]

    def apply(self, snapshot: ColumnSnapshot) -> ColumnSnapshot:
        return snapshot.with_items(self.items)


Patch = RemoveItem | PutItem | ReplaceItems


class TrackedColumn:
    """Two-phase value for a column: confirmed snapshot plus tentative patches."""

    def __init__(self, confirmed: ColumnSnapshot) -> None:
        self._confirmed = confirmed
        self._pending: dict[int, tuple[Patch, ...]] = {}
        self._value = confirmed

    @property
    def confirmed(self) -> ColumnSnapshot:
        return self._confirmed

    @property
    def value(self) -> ColumnSnapshot:
        return self._value

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def stage(self, mutation_id: int, patches: Sequence[Patch]) -> None:
        self._pending[mutation_id] = self._pending.get(mutation_id, ()) + tuple(patches)
        self._recompute()

    def commit(self, mutation_id: int) -> bool:
        patches = self._pending.pop(mutation_id, None)
        if patches is None:
            return False
        self._confirmed = _fold(self._confirmed, patches)
        self._recompute()
        return True

    def holds(self, mutation_id: int) -> bool:
        return mutation_id in self._pending

    def discard(self, mutation_id: int) -> None:
        if self._pending.pop(mutation_id, None) is not None:
            self._recompute()

    def reset(self, snapshot: ColumnSnapshot) -> tuple[int, ...]:
        """Replace confirmed state and drop every tentative patch.

        Returns the ids of the mutations whose patches were dropped.
        """

        dropped = tuple(self._pending)
        self._confirmed = snapshot
        self._pending.clear()
        self._value = snapshot
        return dropped

    def rebase(self, snapshot: ColumnSnapshot) -> None:
        """Replace confirmed state, keeping tentative patches on top of it."""

        self._confirmed = snapshot
        self._recompute()

    def _recompute(self) -> None:
        value = self._confirmed
        for patches in self._pending.values():
            value = _fold(value, patches)
        self._value = value


def _fold(snapshot: ColumnSnapshot, patches: Iterable[Patch]) -> ColumnSnapshot:
    for patch in patches:
        snapshot = patch.apply(snapshot)
    return snapshot


class Board:
    """Columns, their cards, and open detail views."""

    def __init__(self, columns: Iterable[BoardColumn]) -> None:
        self._columns: dict[str, TrackedColumn] = {}
        self._details: dict[str, BoardItem] = {}
        for column in sorted(columns, key=lambda c: c.order):
            self._check_mapping(column)
            self._columns[column.id] = TrackedColumn(ColumnSnapshot(column=column))
        if DEFAULT_COLUMN_ID not in self._columns:
            raise ColumnNotFoundError(f"Board requires a '{DEFAULT_COLUMN_ID}' column")

    # Reading

    @property
    def default_column_id(self) -> str:
        return DEFAULT_COLUMN_ID

    @property
    def snoozed_column_id(self) -> str | None:
        return SNOOZED_COLUMN_ID if SNOOZED_COLUMN_ID in self._columns else None

    def columns(self) -> list[BoardColumn]:
        return sorted((t.value.column for t in self._columns.values()), key=lambda c: c.order)

    def column(self, column_id: str) -> BoardColumn:
        return self._tracked(column_id).value.column

    def has_column(self, column_id: str) -> bool:
        return column_id in self._columns

    def snapshot(self, column_id: str) -> ColumnSnapshot:
        return self._tracked(column_id).value

    def confirmed(self, column_id: str) -> ColumnSnapshot:
        return self._tracked(column_id).confirmed

    def snapshots(self) -> list[ColumnSnapshot]:
        return [self.snapshot(column.id) for column in self.columns()]

    def find(self, item_id: str) -> tuple[str, BoardItem] | None:
        for column_id, tracked in self._columns.items():
            item = tracked.value.get(item_id)
            if item is not None:
                return column_id, item
        return None

    def column_for_mapping(self, mapping: str | None) -> BoardColumn | None:
        if mapping is None:
            return None
        for tracked in self._columns.values():
            if tracked.value.column.mapping == mapping:
                return tracked.value.column
        return None

    def pending_snoozes(self) -> list[SnoozeEntry]:
        entries: list[SnoozeEntry] = []
        for tracked in self._columns.values():
            for item in tracked.value.items:
                if item.snooze_until is not None:
                    entries.append(
                        SnoozeEntry(item_id=item.id, thread_id=item.thread_id, wake_at=item.snooze_until)
                    )
        return entries

    # Detail views

    def open_detail(self, item_id: str) -> BoardItem | None:
        found = self.find(item_id)
        if found is None:
            return None
        self._details[item_id] = found[1]
        return found[1]

    def detail(self, item_id: str) -> BoardItem | None:
        return self._details.get(item_id)

    def update_detail(self, item: BoardItem) -> None:
        if item.id in self._details:
            self._details[item.id] = item

    def close_detail(self, item_id: str) -> None:
        self._details.pop(item_id, None)

    # Two-phase mutation state

    def stage(self, mutation_id: int, patches: dict[str, Sequence[Patch]]) -> None:
        for column_id, column_patches in patches.items():
            self._tracked(column_id).stage(mutation_id, column_patches)

    def commit(self, mutation_id: int, column_ids: Iterable[str]) -> bool:
        """Fold a mutation into confirmed state.

        Returns False, committing nothing, when any of the columns no longer holds
        the mutation because a refresh superseded it.
        """

        tracked = [self._columns.get(column_id) for column_id in column_ids]
        if any(column is None or not column.holds(mutation_id) for column in tracked):
            self.discard(mutation_id, self._columns)
            return False
        for column in tracked:
            column.commit(mutation_id)
        return True

    def discard(self, mutation_id: int, column_ids: Iterable[str]) -> None:
        for column_id in column_ids:
            if column_id in self._columns:
                self._columns[column_id].discard(mutation_id)

    def has_pending(self, column_id: str) -> bool:
        return self._tracked(column_id).has_pending

    # Reconciliation

    def replace_items(
        self,
        column_id: str,
        items: Sequence[BoardItem],
        *,
        next_page_token: str | None = None,
    ) -> None:
        """Replace a column's cards with fresh truth from the mail store.

        Pending tentative patches of the column are dropped, and the incoming cards are
        removed from every other column so each card lives in exactly one column.
        """

        tracked = self._tracked(column_id)
        snapshot = tracked.confirmed.with_items(items)
        snapshot = replace(snapshot, load=ColumnLoad(state=LoadState.LOADED, next_page_token=next_page_token))
        dropped = tracked.reset(snapshot)
        for mutation_id in dropped:
            # A refresh supersedes the whole mutation, not just this column's half.
            self.discard(mutation_id, self._columns)
        if dropped:
            logger.info("mutations_superseded", column_id=column_id, mutation_ids=list(dropped))
        self._claim(column_id, [item.id for item in items])
        self._refresh_details(snapshot.items)

    def append_items(
        self,
        column_id: str,
        items: Sequence[BoardItem],
        *,
        next_page_token: str | None = None,
    ) -> None:
        tracked = self._tracked(column_id)
        known = {item.id for item in tracked.confirmed.items}
        fresh = [item for item in items if item.id not in known]
        snapshot = tracked.confirmed.with_items(tracked.confirmed.items + tuple(fresh))
        snapshot = replace(snapshot, load=ColumnLoad(state=LoadState.LOADED, next_page_token=next_page_token))
        tracked.rebase(snapshot)
        self._claim(column_id, [item.id for item in fresh])

    def set_load(self, column_id: str, load: ColumnLoad) -> None:
        tracked = self._tracked(column_id)
        tracked.rebase(replace(tracked.confirmed, load=load))

    # Column configuration

    def add_column(self, column: BoardColumn) -> None:
        if column.id in self._columns:
            raise ValueError(f"Column '{column.id}' already exists")
        self._check_mapping(column)
        self._columns[column.id] = TrackedColumn(ColumnSnapshot(column=column))
        logger.info("column_added", column_id=column.id, mapping=column.mapping)

    def update_column(self, column: BoardColumn) -> None:
        tracked = self._tracked(column.id)
        self._check_mapping(column)
        tracked.rebase(replace(tracked.confirmed, column=column))

    def remove_column(self, column_id: str) -> tuple[BoardItem, ...]:
        """Delete a non-system column and return the cards it held."""

        column = self.column(column_id)
        if column.is_system or column_id == DEFAULT_COLUMN_ID:
            raise SystemColumnError(f"Column '{column_id}' cannot be deleted")
        tracked = self._columns.pop(column_id)
        logger.info("column_removed", column_id=column_id, orphaned=len(tracked.value.items))
        return tracked.value.items

    def reorder_columns(self, column_ids: Sequence[str]) -> None:
        for order, column_id in enumerate(column_ids):
            column = self.column(column_id)
            if column.order != order:
                self.update_column(column.model_copy(update={"order": order}))

    # Internals

    def _tracked(self, column_id: str) -> TrackedColumn:
        try:
            return self._columns[column_id]
        except KeyError:
            raise ColumnNotFoundError(f"Column '{column_id}' is not on the board") from None

    def _check_mapping(self, column: BoardColumn) -> None:
        if column.mapping is None:
            return
        for other_id, tracked in self._columns.items():
            if other_id != column.id and tracked.value.column.mapping == column.mapping:
                raise DuplicateMappingError(
                    f"Label '{column.mapping}' is already mapped to column '{other_id}'"
                )

    def _claim(self, column_id: str, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        for other_id, other in self._columns.items():
            if other_id == column_id:
                continue
            trimmed = other.confirmed.without(item_ids)
            if trimmed is not other.confirmed:
                other.rebase(trimmed)

    def _refresh_details(self, items: Iterable[BoardItem]) -> None:
        for item in items:
            if item.id in self._details:
                self._details[item.id] = item
