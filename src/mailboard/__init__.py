"""Mailboard - a Kanban workflow board kept in sync with Gmail labels.

This package provides an optimistic board engine that mirrors mail labels as
columns, applies card moves locally before Gmail confirms them, and reconciles
with the mailbox when the two disagree.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mailboard.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
