"""Stream lifecycle management."""

from .errors import (
    BlockedWithoutBlockerError,
    BlockerCycleError,
    DuplicateStreamIdError,
    InvalidFieldError,
    InvalidStatusError,
    InvalidTransitionError,
    LifecycleError,
    PhaseOutOfRangeError,
    ProgressOutOfRangeError,
    StreamArchivedError,
    UnknownBlockerError,
    UnknownStreamError,
)
from .lifecycle import StreamLifecycle, StreamUpdate, TRANSITIONS, can_transition

__all__ = [
    "BlockedWithoutBlockerError",
    "BlockerCycleError",
    "DuplicateStreamIdError",
    "InvalidFieldError",
    "InvalidStatusError",
    "InvalidTransitionError",
    "LifecycleError",
    "PhaseOutOfRangeError",
    "ProgressOutOfRangeError",
    "StreamArchivedError",
    "StreamLifecycle",
    "StreamUpdate",
    "TRANSITIONS",
    "UnknownBlockerError",
    "UnknownStreamError",
    "can_transition",
]
