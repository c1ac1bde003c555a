"""AI summaries for board cards.

Summaries are generated by Ollama, written through to the local store, and
rate limited so bulk moves cannot flood the model.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from mailboard.board.scheduler import Clock, utcnow
from mailboard.config import Settings
from mailboard.exceptions import OllamaInferenceError
from mailboard.models import RateLimited
from mailboard.ollama.client import OllamaClient
from mailboard.store.repository import BoardStore

logger = structlog.get_logger()

# Loads (sender, subject, body) for a message id.
ContentLoader = Callable[[str], Awaitable[tuple[str, str, str]]]

_WINDOW = timedelta(minutes=1)


def build_summary_prompt(*, sender: str, subject: str, body: str) -> str:
    return (
        "You are an expert email analyst. Read the email below and write a super short "
        "summary for a task board card.\n\n"
        "Rules:\n"
        "1. Identify the MAIN point; do not copy text from the email.\n"
        "2. Write ONE sentence of at most 12 words.\n"
        "3. Use the same language as the email body.\n"
        "4. Do not start with 'Email from' and do not include greetings or signatures.\n\n"
        f"From: {sender}\n"
        f"Subject: {subject}\n"
        f"Content: {body}\n\n"
        "Your summary (max 12 words):"
    )


def clean_summary(text: str) -> str:
    """Strip the decoration models like to add around a one-line answer."""

    line = next((ln.strip() for ln in text.strip().splitlines() if ln.strip()), "")
    for prefix in ("summary:", "your summary:"):
        if line.lower().startswith(prefix):
            line = line[len(prefix):].strip()
    return line.strip("\"'` ")


class OllamaSummaryCache:
    """Write-through summary cache with a per-minute generation budget."""

    def __init__(
        self,
        ollama: OllamaClient,
        store: BoardStore,
        load_content: ContentLoader,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        self._ollama = ollama
        self._store = store
        self._load_content = load_content
        self._clock = clock or utcnow
        self._requests: deque[datetime] = deque()

    async def generate_summary(self, item_id: str, force: bool = False) -> str | RateLimited:
        """Return the summary for ``item_id``, generating it if needed.

        Args:
            item_id: Message to summarize.
            force: Regenerate even when a cached summary exists.

        Returns:
            The summary text, or ``RateLimited`` when the budget for the current
            minute is spent.

        Raises:
            OllamaConnectionError: If Ollama cannot be reached.
            OllamaInferenceError: If Ollama fails or returns nothing usable.
        """

        if not force:
            cached = self._store.get_summary(item_id)
            if cached is not None:
                logger.debug("summary_cache_hit", item_id=item_id)
                return cached.summary

        limited = self._take_budget()
        if limited is not None:
            logger.info("summary_rate_limited", item_id=item_id, retry_after=limited.retry_after)
            return limited

        sender, subject, body = await self._load_content(item_id)
        prompt = build_summary_prompt(sender=sender, subject=subject, body=body)
        response = await self._ollama.generate(prompt)

        summary = clean_summary(str(response.get("response") or ""))
        if not summary:
            raise OllamaInferenceError(f"Empty summary for message {item_id}")

        self._store.save_summary(item_id, summary, model=response.get("model") or self.settings.ollama_model)
        logger.info("summary_generated", item_id=item_id, length=len(summary))
        return summary

    def _take_budget(self) -> RateLimited | None:
        now = self._clock()
        while self._requests and now - self._requests[0] >= _WINDOW:
            self._requests.popleft()

        if len(self._requests) >= self.settings.summary_rate_limit_per_minute:
            if not self._requests:
                return RateLimited(retry_after=_WINDOW.total_seconds())
            retry_after = (self._requests[0] + _WINDOW - now).total_seconds()
            return RateLimited(retry_after=max(retry_after, 0.0))

        self._requests.append(now)
        return None
