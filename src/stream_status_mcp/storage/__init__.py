"""Storage abstractions for stream status tracking."""

from .models import (
    CATEGORIES,
    PRIORITIES,
    STATUSES,
    CommitRecord,
    HistoryEvent,
    QuickStats,
    StreamRecord,
    StreamSummary,
)
from .sqlite import DuplicateStreamError, StoreError, StreamNotFoundError, StreamStore

__all__ = [
    "CATEGORIES",
    "PRIORITIES",
    "STATUSES",
    "CommitRecord",
    "DuplicateStreamError",
    "HistoryEvent",
    "QuickStats",
    "StoreError",
    "StreamNotFoundError",
    "StreamRecord",
    "StreamStore",
    "StreamSummary",
]
