"""Single-timer scheduler for snoozed cards.

Only one wake-up timer exists at a time, armed for the earliest pending snooze.
Firing never un-snoozes anything locally: it asks for a reconciliation and lets
the mail store decide what came back.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import structlog

from mailboard.models import SnoozeEntry

logger = structlog.get_logger()


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Clock = Callable[[], datetime]
CallLater = Callable[[float, Callable[[], None]], TimerHandle]
WakeCallback = Callable[[], "Awaitable[Any] | None"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnoozeScheduler:
    """Arms exactly one timer for the soonest future snooze deadline."""

    def __init__(
        self,
        on_wake: WakeCallback,
        *,
        buffer: timedelta = timedelta(seconds=2),
        clock: Clock | None = None,
        call_later: CallLater | None = None,
    ) -> None:
        """Create a scheduler.

        Args:
            on_wake: Called when the timer fires. Coroutines are scheduled as tasks.
            buffer: Extra wait after the deadline to absorb mail store lag.
            clock: Source of the current time. Defaults to UTC wall clock.
            call_later: Timer factory. Defaults to the running loop's ``call_later``.
        """

        self._on_wake = on_wake
        self._buffer = buffer
        self._clock = clock or utcnow
        self._call_later = call_later
        self._handle: TimerHandle | None = None
        self._deadline: datetime | None = None
        self._wake_tasks: set[asyncio.Future[Any]] = set()

    @property
    def deadline(self) -> datetime | None:
        """Instant the armed timer fires at (wake-up plus buffer), if armed."""

        return self._deadline

    @property
    def is_armed(self) -> bool:
        return self._handle is not None

    def reschedule(self, pending: Iterable[SnoozeEntry]) -> datetime | None:
        """Re-arm the timer for the soonest deadline in ``pending``.

        Returns:
            The new deadline, or None if nothing is pending in the future.
        """

        now = self._clock()
        upcoming = [entry.wake_at for entry in pending if entry.wake_at > now]
        if not upcoming:
            self.cancel()
            return None

        deadline = min(upcoming) + self._buffer
        if self._handle is not None and self._deadline == deadline:
            return deadline

        self.cancel()
        delay = max(0.0, (deadline - now).total_seconds())
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._handle = call_later(delay, self._fire)
        self._deadline = deadline
        logger.info("snooze_timer_armed", deadline=deadline.isoformat(), delay_seconds=delay)
        return deadline

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            logger.debug("snooze_timer_cancelled", deadline=self._deadline.isoformat() if self._deadline else None)
        self._handle = None
        self._deadline = None

    async def close(self) -> None:
        """Disarm the timer and cancel any wake-up still running."""

        self.cancel()
        tasks = list(self._wake_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _fire(self) -> None:
        logger.info("snooze_timer_fired", deadline=self._deadline.isoformat() if self._deadline else None)
        self._handle = None
        self._deadline = None
        result = self._on_wake()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._wake_tasks.add(task)
            task.add_done_callback(self._wake_done)

    def _wake_done(self, task: asyncio.Future[Any]) -> None:
        self._wake_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.exception("snooze_wake_failed", error=str(exc), exc_info=exc)
