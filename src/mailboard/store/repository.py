"""SQLite-backed local store for board state the mail store cannot hold.

Gmail knows which label a message carries but nothing about where a card sits
within a column, when a snoozed message should come back, or what its summary
says. Those live here, scoped per user.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mailboard.board.positions import GAP
from mailboard.models import BoardColumn, BoardItem

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SnoozeRecord:
    """A snoozed message and the label it came from."""

    item_id: str
    thread_id: str | None
    wake_at: datetime
    original_mapping: str | None


@dataclass(frozen=True)
class StoredSummary:
    item_id: str
    summary: str
    model: str | None
    created_at: datetime


class BoardStore:
    """Repository for positions, snoozes, summaries and column configuration."""

    def __init__(self, db_path: Path, user_id: str = "me") -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
            user_id: Owner of the rows read and written by this instance.
        """

        self._db_path = db_path
        self._user_id = user_id

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or upgrade the store schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("board_store_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # Positions

    def get_positions(self, column_id: str) -> dict[str, int]:
        """Known positions of cards in ``column_id``, keyed by item id."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT item_id, position
                FROM item_positions
                WHERE user_id = ? AND column_id = ? AND position IS NOT NULL;
                """,
                (self._user_id, column_id),
            ).fetchall()

        return {row["item_id"]: int(row["position"]) for row in rows}

    def save_positions(self, column_id: str, items: Sequence[BoardItem]) -> None:
        """Upsert the positions of ``items``, recording them as members of ``column_id``."""

        if not items:
            return

        now_iso = _now_iso()
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO item_positions (user_id, item_id, column_id, position, updated_at_iso)
                VALUES (:user_id, :item_id, :column_id, :position, :updated_at_iso)
                ON CONFLICT(user_id, item_id) DO UPDATE SET
                    column_id=excluded.column_id,
                    position=excluded.position,
                    updated_at_iso=excluded.updated_at_iso
                """,
                [
                    {
                        "user_id": self._user_id,
                        "item_id": item.id,
                        "column_id": column_id,
                        "position": item.position,
                        "updated_at_iso": now_iso,
                    }
                    for item in items
                ],
            )
            conn.commit()

    def backfill_positions(self, gap: int = GAP) -> dict[tuple[str, str], int]:
        """Renumber every (user, column) to ``index * gap``.

        Rows are ordered by their existing position (missing positions last), then by
        when they were last updated. Running it twice gives the same result.

        Returns:
            Number of rows renumbered per ``(user_id, column_id)``.
        """

        if gap < 2:
            raise ValueError("gap must be at least 2")

        counts: dict[tuple[str, str], int] = {}
        with self._connect() as conn:
            groups = conn.execute(
                """
                SELECT DISTINCT user_id, column_id
                FROM item_positions
                ORDER BY user_id, column_id;
                """
            ).fetchall()

            for group in groups:
                user_id, column_id = group["user_id"], group["column_id"]
                rows = conn.execute(
                    """
                    SELECT item_id
                    FROM item_positions
                    WHERE user_id = ? AND column_id = ?
                    ORDER BY position IS NULL, position, updated_at_iso, item_id;
                    """,
                    (user_id, column_id),
                ).fetchall()

                conn.executemany(
                    """
                    UPDATE item_positions
                    SET position = ?
                    WHERE user_id = ? AND item_id = ?;
                    """,
                    [(index * gap, user_id, row["item_id"]) for index, row in enumerate(rows)],
                )
                counts[(user_id, column_id)] = len(rows)
                logger.info(
                    "positions_backfilled",
                    user_id=user_id,
                    column_id=column_id,
                    count=len(rows),
                    gap=gap,
                )

            conn.commit()

        return counts

    # Snoozes

    def save_snooze(
        self,
        item_id: str,
        thread_id: str | None,
        wake_at: datetime,
        original_mapping: str | None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO snoozes (user_id, item_id, thread_id, wake_at_iso, original_mapping, created_at_iso)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, item_id) DO UPDATE SET
                    thread_id=excluded.thread_id,
                    wake_at_iso=excluded.wake_at_iso,
                    original_mapping=COALESCE(snoozes.original_mapping, excluded.original_mapping)
                """,
                (
                    self._user_id,
                    item_id,
                    thread_id,
                    _to_utc(wake_at).isoformat(),
                    original_mapping,
                    _now_iso(),
                ),
            )
            conn.commit()

    def get_snooze(self, item_id: str) -> SnoozeRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT item_id, thread_id, wake_at_iso, original_mapping
                FROM snoozes
                WHERE user_id = ? AND item_id = ?;
                """,
                (self._user_id, item_id),
            ).fetchone()

        return self._row_to_snooze(row) if row is not None else None

    def delete_snooze(self, item_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM snoozes WHERE user_id = ? AND item_id = ?;",
                (self._user_id, item_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def list_snoozes(self) -> list[SnoozeRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT item_id, thread_id, wake_at_iso, original_mapping
                FROM snoozes
                WHERE user_id = ?
                ORDER BY wake_at_iso;
                """,
                (self._user_id,),
            ).fetchall()

        return [self._row_to_snooze(row) for row in rows]

    def due_snoozes(self, now: datetime) -> list[SnoozeRecord]:
        """Snoozes whose wake-up instant is at or before ``now``."""

        cutoff = _to_utc(now)
        return [record for record in self.list_snoozes() if record.wake_at <= cutoff]

    # Summaries

    def get_summary(self, item_id: str) -> StoredSummary | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT item_id, summary, model, created_at_iso
                FROM summaries
                WHERE item_id = ?;
                """,
                (item_id,),
            ).fetchone()

        if row is None:
            return None
        return StoredSummary(
            item_id=row["item_id"],
            summary=row["summary"],
            model=row["model"],
            created_at=datetime.fromisoformat(row["created_at_iso"]),
        )

    def save_summary(self, item_id: str, summary: str, model: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO summaries (item_id, summary, model, created_at_iso)
                VALUES (?, ?, ?, ?);
                """,
                (item_id, summary, model, _now_iso()),
            )
            conn.commit()

    # Column configuration

    def load_columns(self) -> list[BoardColumn]:
        """Saved column configuration for the user, in display order."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT config_json
                FROM board_columns
                WHERE user_id = ?;
                """,
                (self._user_id,),
            ).fetchall()

        columns = [BoardColumn.model_validate(json.loads(row["config_json"])) for row in rows]
        return sorted(columns, key=lambda column: column.order)

    def save_columns(self, columns: Sequence[BoardColumn]) -> None:
        """Replace the user's column configuration with ``columns``."""

        with self._connect() as conn:
            conn.execute("DELETE FROM board_columns WHERE user_id = ?;", (self._user_id,))
            conn.executemany(
                """
                INSERT INTO board_columns (user_id, column_id, config_json, updated_at_iso)
                VALUES (?, ?, ?, ?);
                """,
                [
                    (self._user_id, column.id, column.model_dump_json(), _now_iso())
                    for column in columns
                ],
            )
            conn.commit()
        logger.info("columns_saved", user_id=self._user_id, count=len(columns))

    # Sync cursors

    def get_cursor(self, name: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_cursors WHERE user_id = ? AND name = ?;",
                (self._user_id, name),
            ).fetchone()
        return row["value"] if row is not None else None

    def set_cursor(self, name: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_cursors (user_id, name, value) VALUES (?, ?, ?);",
                (self._user_id, name, value),
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS item_positions (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                column_id TEXT NOT NULL,
                position INTEGER,
                updated_at_iso TEXT NOT NULL,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE INDEX IF NOT EXISTS idx_item_positions_column
                ON item_positions(user_id, column_id, position);

            CREATE TABLE IF NOT EXISTS snoozes (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                thread_id TEXT,
                wake_at_iso TEXT NOT NULL,
                original_mapping TEXT,
                created_at_iso TEXT NOT NULL,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS summaries (
                item_id TEXT PRIMARY KEY,
                summary TEXT NOT NULL,
                model TEXT,
                created_at_iso TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS board_columns (
                user_id TEXT NOT NULL,
                column_id TEXT NOT NULL,
                config_json TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL,
                PRIMARY KEY (user_id, column_id)
            );

            CREATE TABLE IF NOT EXISTS sync_cursors (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (user_id, name)
            );
            """
        )

    def _row_to_snooze(self, row: sqlite3.Row) -> SnoozeRecord:
        return SnoozeRecord(
            item_id=row["item_id"],
            thread_id=row["thread_id"],
            wake_at=datetime.fromisoformat(row["wake_at_iso"]),
            original_mapping=row["original_mapping"],
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
