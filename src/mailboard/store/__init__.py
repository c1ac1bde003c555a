"""Local persistence for Mailboard."""

from mailboard.store.repository import BoardStore, SnoozeRecord, StoredSummary

__all__ = ["BoardStore", "SnoozeRecord", "StoredSummary"]
