"""Ollama integration."""

from mailboard.ollama.client import OllamaClient

__all__ = ["OllamaClient"]
