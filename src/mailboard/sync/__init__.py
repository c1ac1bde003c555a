"""Collaborator contracts and push channels."""

from mailboard.sync.protocols import FetchClient, MappingResolver, PushChannel, SummaryCache, SyncClient
from mailboard.sync.push import QueuePushChannel

__all__ = [
    "FetchClient",
    "MappingResolver",
    "PushChannel",
    "QueuePushChannel",
    "SummaryCache",
    "SyncClient",
]
