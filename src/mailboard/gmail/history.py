"""Push channel built on polling the Gmail history API.

Gmail only pushes through Cloud Pub/Sub, which needs infrastructure this project
does not assume. Polling ``users.history.list`` from a stored cursor yields the
same changes with a small delay.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import structlog

from mailboard.board.scheduler import Clock, utcnow
from mailboard.config import Settings
from mailboard.exceptions import HistoryExpiredError, MailboardError
from mailboard.gmail.client import GmailClient
from mailboard.store.repository import BoardStore

logger = structlog.get_logger()

HISTORY_CURSOR = "gmail_history_id"

# Item id that is never on the board, so the listener falls back to a full refresh.
FULL_REFRESH_ITEM = "*"


class GmailHistoryChannel:
    """Async iterator of push event payloads derived from Gmail history."""

    def __init__(
        self,
        gmail: GmailClient,
        store: BoardStore | None = None,
        settings: Settings | None = None,
        *,
        snooze_label_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        self._gmail = gmail
        self._store = store
        self._snooze_label_id = snooze_label_id
        self._clock = clock or utcnow
        self._closed = asyncio.Event()
        # History record id to the time it was first seen, so redelivered records
        # produce identical events.
        self._record_times: OrderedDict[str, datetime] = OrderedDict()

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._events()

    def close(self) -> None:
        self._closed.set()

    async def poll(self, start_history_id: str) -> tuple[list[dict[str, Any]], str]:
        """Fetch every history page since ``start_history_id``.

        Returns:
            The derived event payloads and the history id to resume from.

        Raises:
            HistoryExpiredError: If the cursor is too old.
        """

        events: list[dict[str, Any]] = []
        latest = start_history_id
        page_token: str | None = None
        while True:
            response = await self._gmail.list_history(start_history_id, page_token=page_token)
            for record in response.get("history", []) or []:
                events.extend(self._record_events(record))
            if response.get("historyId"):
                latest = str(response["historyId"])
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return events, latest

    async def _events(self) -> AsyncIterator[dict[str, Any]]:
        history_id = await self._initial_cursor()
        logger.info("history_channel_started", history_id=history_id)

        while not self._closed.is_set():
            try:
                events, history_id = await self.poll(history_id)
            except HistoryExpiredError as exc:
                logger.warning("history_cursor_expired", history_id=history_id, error=str(exc))
                history_id = str((await self._gmail.get_profile()).get("historyId"))
                events = [self._payload("labels.changed", FULL_REFRESH_ITEM)]
            except MailboardError as exc:
                logger.warning("history_poll_failed", history_id=history_id, error=str(exc))
                events = []
            else:
                if self._store is not None:
                    self._store.set_cursor(HISTORY_CURSOR, history_id)

            for event in events:
                yield event

            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.settings.history_poll_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("history_channel_closed", history_id=history_id)

    async def _initial_cursor(self) -> str:
        if self._store is not None:
            stored = self._store.get_cursor(HISTORY_CURSOR)
            if stored:
                return stored
        profile = await self._gmail.get_profile()
        return str(profile.get("historyId"))

    def _record_events(self, record: dict[str, Any]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        stamp = self._record_time(record.get("id"))

        for entry in record.get("messagesDeleted", []) or []:
            message_id = (entry.get("message") or {}).get("id")
            if message_id:
                events.append(self._payload("email.deleted", message_id, timestamp=stamp))

        for entry in record.get("messagesAdded", []) or []:
            message = entry.get("message") or {}
            if message.get("id"):
                labels = message.get("labelIds") or []
                events.append(
                    self._payload("labels.changed", message["id"], labels[0] if labels else None, timestamp=stamp)
                )

        for entry in record.get("labelsAdded", []) or []:
            message_id = (entry.get("message") or {}).get("id")
            labels = [label for label in entry.get("labelIds") or [] if label != self._snooze_label_id]
            if message_id and labels:
                events.append(self._payload("labels.changed", message_id, labels[0], timestamp=stamp))

        for entry in record.get("labelsRemoved", []) or []:
            message_id = (entry.get("message") or {}).get("id")
            if not message_id:
                continue
            removed = entry.get("labelIds") or []
            if self._snooze_label_id and self._snooze_label_id in removed:
                events.append(self._payload("email.restored", message_id, timestamp=stamp))
            else:
                events.append(self._payload("labels.changed", message_id, timestamp=stamp))

        return events

    def _record_time(self, record_id: Any) -> datetime:
        if record_id is None:
            return self._clock()
        key = str(record_id)
        stamp = self._record_times.get(key)
        if stamp is None:
            stamp = self._clock()
            self._record_times[key] = stamp
            while len(self._record_times) > self.settings.event_dedupe_size:
                self._record_times.popitem(last=False)
        else:
            self._record_times.move_to_end(key)
        return stamp

    def _payload(
        self,
        event_type: str,
        item_id: str,
        to_mapping: str | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "item_id": item_id,
            "timestamp": timestamp or self._clock(),
            "to_mapping": to_mapping,
        }
