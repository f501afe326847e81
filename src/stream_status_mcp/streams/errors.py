"""Errors raised when a stream operation violates a lifecycle rule."""

from __future__ import annotations


class LifecycleError(ValueError):
    """Base class for recoverable stream validation failures."""

    code = "LifecycleError"

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": str(self)}


class InvalidFieldError(LifecycleError):
    code = "InvalidField"


class InvalidStatusError(LifecycleError):
    code = "InvalidStatus"


class InvalidTransitionError(LifecycleError):
    code = "InvalidTransition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition stream from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class ProgressOutOfRangeError(LifecycleError):
    code = "ProgressOutOfRange"

    def __init__(self, value: int) -> None:
        super().__init__(f"Progress must be between 0 and 100 (got {value})")
        self.value = value


class PhaseOutOfRangeError(LifecycleError):
    code = "PhaseOutOfRange"


class UnknownBlockerError(LifecycleError):
    code = "UnknownBlocker"


class BlockerCycleError(LifecycleError):
    code = "BlockerCycle"


class BlockedWithoutBlockerError(LifecycleError):
    code = "BlockedWithoutBlocker"


class StreamArchivedError(LifecycleError):
    code = "StreamArchived"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream '{stream_id}' is archived and can no longer be modified")
        self.stream_id = stream_id


class UnknownStreamError(LifecycleError):
    code = "StreamNotFound"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream not found: {stream_id}")
        self.stream_id = stream_id


class DuplicateStreamIdError(LifecycleError):
    code = "DuplicateStream"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream already exists: {stream_id}")
        self.stream_id = stream_id


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
    "UnknownBlockerError",
    "UnknownStreamError",
]
