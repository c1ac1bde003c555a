"""Helpers for parsing Gmail API payloads into board models."""

from __future__ import annotations

import base64
import html
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from mailboard.models import BoardItem, Label


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first for now.
            result.setdefault(name.lower(), value)
    return result


def _parse_sender(value: str | None) -> str:
    if not value:
        return ""
    # getaddresses returns list[(name, addr)]
    for name, addr in getaddresses([value]):
        if name:
            return name
        if addr:
            return addr
    return value.strip()


def _parse_date(message: dict[str, Any], header: str | None) -> datetime | None:
    internal_date_raw = message.get("internalDate")
    if internal_date_raw is not None:
        try:
            return datetime.fromtimestamp(int(internal_date_raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass

    if not header:
        return None
    try:
        parsed = parsedate_to_datetime(header)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _has_attachment(payload: dict[str, Any]) -> bool:
    if payload.get("filename"):
        return True
    if (payload.get("body") or {}).get("attachmentId"):
        return True
    return any(_has_attachment(part) for part in payload.get("parts") or [] if isinstance(part, dict))


def message_to_item(message: dict[str, Any]) -> BoardItem:
    """Convert a Gmail API message (format=metadata or full) to a BoardItem.

    Args:
        message: Gmail API message dict.

    Returns:
        BoardItem: Card model without column or position.
    """

    hm = _header_map(message)

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []
    labels = tuple(str(x) for x in label_ids if isinstance(x, str))

    return BoardItem(
        id=str(message.get("id") or ""),
        thread_id=str(message.get("threadId") or "") or None,
        sender=_parse_sender(hm.get("from")),
        subject=hm.get("subject") or "",
        snippet=html.unescape(message.get("snippet") or ""),
        date=_parse_date(message, hm.get("date")),
        is_unread="UNREAD" in labels,
        is_starred="STARRED" in labels,
        has_attachment=_has_attachment(message.get("payload") or {}),
        label_ids=labels,
    )


def label_from_api(label: dict[str, Any]) -> Label:
    return Label(id=str(label.get("id") or ""), name=str(label.get("name") or ""))


def _plain_text(payload: dict[str, Any]) -> str:
    if payload.get("mimeType") == "text/plain":
        data = (payload.get("body") or {}).get("data")
        if data:
            return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")
    for part in payload.get("parts") or []:
        if isinstance(part, dict):
            text = _plain_text(part)
            if text:
                return text
    return ""


def message_text(message: dict[str, Any], max_chars: int = 4000) -> tuple[str, str, str]:
    """Return ``(sender, subject, body)`` for summarization.

    Uses the first ``text/plain`` part of a full-format message, falling back to the
    snippet for metadata-only messages. The body is truncated to ``max_chars``.
    """

    item = message_to_item(message)
    body = _plain_text(message.get("payload") or {}) or item.snippet
    return item.sender, item.subject, body.strip()[:max_chars]
