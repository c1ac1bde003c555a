"""Ollama client implementation.

This module provides a client for interacting with Ollama LLM.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any, Optional

import structlog

from mailboard.config import Settings
from mailboard.exceptions import OllamaConnectionError, OllamaInferenceError

logger = structlog.get_logger()


class OllamaClient:
    """Ollama LLM client for AI inference.

    This client handles communication with the Ollama API
    for language model inference tasks.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Ollama client.

        Args:
            settings: Application settings. If None, uses default settings.
        """
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        logger.info(
            "ollama_client_initialized",
            host=self.settings.ollama_host,
            model=self.settings.ollama_model,
        )

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
    ) -> dict[str, Any]:
        """Generate text using Ollama.

        Args:
            prompt: The prompt to send to the model.
            model: Model name to use. If None, uses default from settings.

        Returns:
            Response dictionary; the generated text is under ``response``.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaInferenceError: If inference fails.
        """
        model = model or self.settings.ollama_model
        logger.info("generating_text", model=model, prompt_length=len(prompt))

        payload = {"model": model, "prompt": prompt, "stream": False}
        data = await asyncio.to_thread(self._post_json, "/api/generate", payload)

        if data.get("error"):
            raise OllamaInferenceError(str(data["error"]))
        return data

    def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        host = self.settings.ollama_host.rstrip("/")
        req = urllib.request.Request(
            url=f"{host}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.settings.ollama_timeout) as resp:  # noqa: S310
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise OllamaInferenceError(f"Ollama returned HTTP {exc.code}: {exc.reason}") from exc
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            raise OllamaConnectionError(f"Unable to reach Ollama at {host}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise OllamaInferenceError(f"Ollama returned invalid JSON: {exc}") from exc
