"""Gmail integration: API client, message parsing, sync client and history polling."""

from mailboard.gmail.client import GmailClient, classify_error
from mailboard.gmail.history import GmailHistoryChannel
from mailboard.gmail.parsing import message_to_item
from mailboard.gmail.sync import GmailSyncClient

__all__ = [
    "GmailClient",
    "GmailHistoryChannel",
    "GmailSyncClient",
    "classify_error",
    "message_to_item",
]
