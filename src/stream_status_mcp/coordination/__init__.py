"""Single dashboard host election across processes."""

from .lockfile import (
    CoordinationError,
    DEFAULT_HOST,
    Discovered,
    Hosting,
    LeaderDiscovery,
    LockFileCoordinator,
    LockRecord,
    pid_alive,
    read_lock_record,
)

__all__ = [
    "CoordinationError",
    "DEFAULT_HOST",
    "Discovered",
    "Hosting",
    "LeaderDiscovery",
    "LockFileCoordinator",
    "LockRecord",
    "pid_alive",
    "read_lock_record",
]
