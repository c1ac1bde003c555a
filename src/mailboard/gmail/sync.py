"""Gmail-backed implementation of the board's sync, fetch and mapping contracts.

Columns map to Gmail labels. Moving a card rewrites labels on the message;
snoozing parks it under a dedicated label and records the original label in the
local store so it can be restored later.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import structlog

from mailboard.board.scheduler import utcnow
from mailboard.config import Settings
from mailboard.exceptions import InvalidMappingError, MailboardError
from mailboard.gmail.client import GmailClient
from mailboard.gmail.parsing import label_from_api, message_to_item
from mailboard.models import BoardItem, FetchPage, ItemFlag, Label
from mailboard.store.repository import BoardStore
from mailboard.utils import retry_on_transient

logger = structlog.get_logger()

_FLAG_LABELS = {
    ItemFlag.STARRED: "STARRED",
    ItemFlag.UNREAD: "UNREAD",
}


class GmailSyncClient:
    """Sync, fetch and label resolution against one Gmail mailbox."""

    def __init__(
        self,
        gmail: GmailClient,
        store: BoardStore | None = None,
        settings: Settings | None = None,
        *,
        fetch_concurrency: int = 8,
    ) -> None:
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        self._gmail = gmail
        self._store = store
        self._fetch_limit = asyncio.Semaphore(fetch_concurrency)
        self._snooze_label: Label | None = None

    # FetchClient

    @retry_on_transient()
    async def list_column(self, mapping: str, page_token: str | None = None) -> FetchPage:
        response = await self._gmail.list_messages_page(label_ids=[mapping], page_token=page_token)
        refs = [m.get("id") for m in response.get("messages", []) or []]
        ids = [message_id for message_id in refs if isinstance(message_id, str) and message_id]

        items = await asyncio.gather(*(self._fetch_item(message_id) for message_id in ids))
        logger.info("column_page_fetched", mapping=mapping, count=len(items))
        return FetchPage(items=list(items), next_page_token=response.get("nextPageToken"))

    # SyncClient

    @retry_on_transient()
    async def move_item(
        self,
        item_id: str,
        thread_id: str | None,
        target_mapping: str | None,
        *,
        source_mapping: str | None = None,
    ) -> None:
        add = [target_mapping] if target_mapping else []
        remove = [source_mapping] if source_mapping and source_mapping != target_mapping else []
        if not add and not remove:
            logger.debug("move_item_local_only", item_id=item_id)
            return
        await self._gmail.modify_labels(item_id, add=add, remove=remove)
        logger.info(
            "item_moved",
            item_id=item_id,
            thread_id=thread_id,
            source_mapping=source_mapping,
            target_mapping=target_mapping,
        )

    @retry_on_transient()
    async def set_flag(self, item_id: str, flag: ItemFlag, value: bool) -> None:
        if flag is ItemFlag.ARCHIVED:
            label, value = "INBOX", not value
        else:
            label = _FLAG_LABELS[flag]

        if value:
            await self._gmail.modify_labels(item_id, add=[label])
        else:
            await self._gmail.modify_labels(item_id, remove=[label])
        logger.info("item_flag_set", item_id=item_id, flag=flag.value, label=label, value=value)

    @retry_on_transient()
    async def delete_item(self, item_id: str) -> None:
        await self._gmail.trash_message(item_id)
        if self._store is not None:
            self._store.delete_snooze(item_id)
        logger.info("item_deleted", item_id=item_id)

    @retry_on_transient()
    async def snooze_item(
        self,
        item_id: str,
        thread_id: str | None,
        until: datetime,
        *,
        source_mapping: str | None = None,
    ) -> None:
        snooze_label = await self.snooze_label()
        remove = [m for m in dict.fromkeys([source_mapping, "INBOX"]) if m and m != snooze_label.id]
        await self._gmail.modify_labels(item_id, add=[snooze_label.id], remove=remove)

        if self._store is not None:
            self._store.save_snooze(item_id, thread_id, until, source_mapping)
        logger.info("item_snoozed", item_id=item_id, until=until.isoformat(), source_mapping=source_mapping)

    @retry_on_transient()
    async def unsnooze_item(self, item_id: str) -> None:
        snooze_label = await self.snooze_label()
        record = self._store.get_snooze(item_id) if self._store is not None else None
        restore = (record.original_mapping if record else None) or "INBOX"
        if restore == snooze_label.id:
            restore = "INBOX"

        await self._gmail.modify_labels(item_id, add=[restore], remove=[snooze_label.id])
        if self._store is not None:
            self._store.delete_snooze(item_id)
        logger.info("item_unsnoozed", item_id=item_id, restored_mapping=restore)

    async def release_due_snoozes(self, now: datetime | None = None) -> list[str]:
        """Restore every snooze whose wake-up time has passed.

        Returns:
            IDs of the items restored. Items that fail are logged and left snoozed.
        """

        if self._store is None:
            return []

        now = now or utcnow()
        released: list[str] = []
        for record in self._store.due_snoozes(now):
            try:
                await self.unsnooze_item(record.item_id)
            except MailboardError as exc:
                logger.error("snooze_release_failed", item_id=record.item_id, error=str(exc))
                continue
            released.append(record.item_id)

        logger.info("snoozes_released", count=len(released))
        return released

    # MappingResolver

    async def resolve_mapping(self, mapping: str) -> Label:
        """Find a label by ID or (case-insensitive) name.

        Raises:
            InvalidMappingError: If no such label exists.
        """

        labels = [label_from_api(raw) for raw in await self._gmail.list_labels()]
        for label in labels:
            if label.id == mapping:
                return label
        for label in labels:
            if label.name.lower() == mapping.lower():
                return label
        raise InvalidMappingError(f"Label '{mapping}' does not exist", mapping=mapping)

    async def create_mapping(self, name: str, color: str | None = None) -> Label:
        """Create a label, or return the existing one with the same name."""

        try:
            return await self.resolve_mapping(name)
        except InvalidMappingError:
            pass
        created = label_from_api(await self._gmail.create_label(name, color=color))
        logger.info("label_created", label_id=created.id, name=created.name)
        return created

    async def snooze_label(self) -> Label:
        if self._snooze_label is None:
            self._snooze_label = await self.create_mapping(self.settings.snooze_label_name)
        return self._snooze_label

    # Internals

    async def _fetch_item(self, message_id: str) -> BoardItem:
        async with self._fetch_limit:
            raw: dict[str, Any] = await self._gmail.get_message(message_id)
        item = message_to_item(raw)
        if self._store is None:
            return item

        update: dict[str, Any] = {}
        snooze = self._store.get_snooze(item.id)
        if snooze is not None:
            update["snooze_until"] = snooze.wake_at
        summary = self._store.get_summary(item.id)
        if summary is not None:
            update["summary"] = summary.summary
        return item.model_copy(update=update) if update else item
