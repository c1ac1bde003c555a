"""Transient user notices (toasts)."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from mailboard.board.scheduler import Clock, utcnow

logger = structlog.get_logger()


class NoticeKind(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Notice(BaseModel):
    """A dismissable message shown to the user."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: NoticeKind
    message: str
    column_id: str | None = None
    created_at: datetime
    expires_at: datetime | None = None


class NoticeCenter:
    """Holds active notices. Auto-clearing notices expire after ``ttl``."""

    def __init__(self, *, ttl: timedelta = timedelta(seconds=8), clock: Clock | None = None) -> None:
        self._ttl = ttl
        self._clock = clock or utcnow
        self._ids = itertools.count(1)
        self._notices: dict[int, Notice] = {}

    def post(
        self,
        message: str,
        *,
        kind: NoticeKind = NoticeKind.ERROR,
        column_id: str | None = None,
        auto_clear: bool = False,
    ) -> Notice:
        now = self._clock()
        notice = Notice(
            id=next(self._ids),
            kind=kind,
            message=message,
            column_id=column_id,
            created_at=now,
            expires_at=now + self._ttl if auto_clear else None,
        )
        self._notices[notice.id] = notice
        logger.info("notice_posted", notice_id=notice.id, kind=kind.value, column_id=column_id)
        return notice

    def dismiss(self, notice_id: int) -> bool:
        return self._notices.pop(notice_id, None) is not None

    def active(self) -> list[Notice]:
        now = self._clock()
        expired = [n.id for n in self._notices.values() if n.expires_at is not None and n.expires_at <= now]
        for notice_id in expired:
            del self._notices[notice_id]
        return list(self._notices.values())
