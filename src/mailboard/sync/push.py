"""In-process push channel."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import structlog

logger = structlog.get_logger()

_CLOSED = object()


class QueuePushChannel:
    """Push channel fed by ``publish``; iteration ends after ``close``.

    Used by tests and by embedders that receive events from their own transport
    (webhooks, server-sent events) and hand them to the board.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._closed = False

    async def publish(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("Push channel is closed")
        await self._queue.put(payload)

    def publish_nowait(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("Push channel is closed")
        self._queue.put_nowait(payload)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            payload = await self._queue.get()
            if payload is _CLOSED:
                logger.debug("push_channel_drained")
                return
            yield payload
