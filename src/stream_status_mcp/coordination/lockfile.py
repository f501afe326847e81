"""Lock-file based election of the single dashboard host per project."""

from __future__ import annotations

import json
import logging
import os
import platform
import socket
import tempfile
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_RECLAIM_ATTEMPTS = 3
DEFAULT_BIND_RETRY_ATTEMPTS = 20
DEFAULT_BIND_RETRY_DELAY = 0.1


class CoordinationError(RuntimeError):
    """Raised when the dashboard lock cannot be acquired or a port cannot be bound."""


@dataclass(slots=True)
class Hosting:
    """This process won the election and owns the bound listening socket."""

    port: int
    socket: socket.socket


@dataclass(slots=True)
class Discovered:
    """Another live process already hosts the dashboard."""

    pid: int
    port: int


@dataclass(slots=True)
class LockRecord:
    pid: int
    port: int
    project_root: str
    project_name: str
    started_at: str
    python_version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "port": self.port,
            "projectRoot": self.project_root,
            "projectName": self.project_name,
            "startedAt": self.started_at,
            "pythonVersion": self.python_version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LockRecord":
        return cls(
            pid=int(payload["pid"]),
            port=int(payload["port"]),
            project_root=str(payload.get("projectRoot", "")),
            project_name=str(payload.get("projectName", "")),
            started_at=str(payload.get("startedAt", "")),
            python_version=str(payload.get("pythonVersion", "")),
        )


class LeaderDiscovery(Protocol):
    def try_acquire(self, port: int | None = None) -> Hosting | Discovered: ...

    def release(self) -> None: ...


def pid_alive(pid: int) -> bool:
    """Return whether a process with ``pid`` exists on this host."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_lock_record(lock_path: Path) -> LockRecord | None:
    """Load the lock record, or ``None`` when it is absent or unreadable."""

    try:
        raw = Path(lock_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read dashboard lock", extra={"path": str(lock_path), "error": str(exc)})
        return None
    try:
        return LockRecord.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError):
        return None


class LockFileCoordinator:
    """Elect one dashboard host per project through an atomically created lock file.

    The winner writes ``{pid, port, ...}`` into ``lock_path``; every later
    caller reads it and connects to the recorded port instead. A record whose
    pid is gone is stale and gets reclaimed by the next caller.
    """

    def __init__(
        self,
        lock_path: Path,
        project_root: Path,
        *,
        host: str = DEFAULT_HOST,
        max_attempts: int = DEFAULT_RECLAIM_ATTEMPTS,
        pid: int | None = None,
        bind_retry_attempts: int = DEFAULT_BIND_RETRY_ATTEMPTS,
        bind_retry_delay: float = DEFAULT_BIND_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._lock_path = Path(lock_path)
        self._project_root = Path(project_root)
        self._host = host
        self._max_attempts = max(1, max_attempts)
        self._pid = pid if pid is not None else os.getpid()
        self._bind_retry_attempts = max(1, bind_retry_attempts)
        self._bind_retry_delay = bind_retry_delay
        self._sleep = sleep
        self._hosting = False

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def is_hosting(self) -> bool:
        return self._hosting

    def try_acquire(self, port: int | None = None) -> Hosting | Discovered:
        existing = self._live_record()
        if existing is not None:
            return Discovered(pid=existing.pid, port=existing.port)

        try:
            sock = self._bind(port)
        except CoordinationError:
            if not port:
                raise
            # a concurrent starter may hold the port before publishing its record
            winner = self._await_live_record()
            if winner is None:
                raise
            logger.info(
                "Configured dashboard port is held by the lock owner",
                extra={"pid": winner.pid, "port": winner.port},
            )
            return Discovered(pid=winner.pid, port=winner.port)

        bound_port = sock.getsockname()[1]
        try:
            outcome = self._elect(bound_port)
        except BaseException:
            sock.close()
            raise
        if isinstance(outcome, Discovered):
            sock.close()
            return outcome

        self._hosting = True
        logger.info(
            "Acquired dashboard lock",
            extra={"lock_path": str(self._lock_path), "port": bound_port, "pid": self._pid},
        )
        return Hosting(port=bound_port, socket=sock)

    def release(self) -> None:
        """Remove the lock file if it still names this process."""

        if not self._hosting:
            return
        self._hosting = False
        record = read_lock_record(self._lock_path)
        if record is None or record.pid != self._pid:
            return
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise CoordinationError(f"Failed to remove dashboard lock {self._lock_path}: {exc}") from exc
        logger.info("Released dashboard lock", extra={"lock_path": str(self._lock_path)})

    def _elect(self, port: int) -> Discovered | None:
        payload = json.dumps(self._record(port).to_dict(), indent=2)
        for attempt in range(self._max_attempts):
            if self._create_exclusive(payload):
                return None

            raw = self._read_raw()
            record = self._parse(raw)
            if record is not None and pid_alive(record.pid):
                return Discovered(pid=record.pid, port=record.port)

            if raw is not None:
                logger.info(
                    "Reclaiming stale dashboard lock",
                    extra={
                        "lock_path": str(self._lock_path),
                        "stale_pid": record.pid if record else None,
                        "attempt": attempt + 1,
                    },
                )
                self._discard_stale(raw)

        logger.warning(
            "Dashboard lock contention persisted; overwriting",
            extra={"lock_path": str(self._lock_path), "attempts": self._max_attempts},
        )
        self._write_replace(payload)
        return None

    def _live_record(self) -> LockRecord | None:
        record = read_lock_record(self._lock_path)
        if record is not None and pid_alive(record.pid):
            return record
        return None

    def _await_live_record(self) -> LockRecord | None:
        for attempt in range(self._bind_retry_attempts):
            record = self._live_record()
            if record is not None and record.pid != self._pid:
                return record
            if attempt + 1 < self._bind_retry_attempts:
                self._sleep(self._bind_retry_delay)
        return None

    def _discard_stale(self, raw: str) -> None:
        """Move the lock aside and drop it only if it is still the record read as ``raw``."""

        aside = self._lock_path.with_name(
            f"{self._lock_path.name}.stale-{self._pid}-{uuid.uuid4().hex}"
        )
        try:
            os.rename(self._lock_path, aside)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise CoordinationError(
                f"Failed to remove stale dashboard lock {self._lock_path}: {exc}"
            ) from exc
        try:
            if aside.read_text(encoding="utf-8") != raw:
                # a fresh record replaced the stale one; put it back unless yet another won
                try:
                    os.link(aside, self._lock_path)
                except FileExistsError:
                    pass
        finally:
            aside.unlink(missing_ok=True)

    def _bind(self, port: int | None) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if os.name == "posix":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, port or 0))
            sock.listen(128)
        except OSError as exc:
            sock.close()
            raise CoordinationError(f"Failed to bind dashboard port {port or 0}: {exc}") from exc
        return sock

    def _record(self, port: int) -> LockRecord:
        return LockRecord(
            pid=self._pid,
            port=port,
            project_root=str(self._project_root),
            project_name=self._project_root.name,
            started_at=datetime.now(timezone.utc).isoformat(),
            python_version=platform.python_version(),
        )

    def _create_exclusive(self, payload: str) -> bool:
        """Publish a fully written record at ``lock_path`` only if none exists."""

        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self._lock_path.parent), prefix=f"{self._lock_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            try:
                os.link(tmp_name, self._lock_path)
            except FileExistsError:
                return False
            return True
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass

    def _write_replace(self, payload: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self._lock_path.parent), prefix=f"{self._lock_path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, self._lock_path)

    def _read_raw(self) -> str | None:
        try:
            return self._lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CoordinationError(f"Failed to read dashboard lock {self._lock_path}: {exc}") from exc

    @staticmethod
    def _parse(raw: str | None) -> LockRecord | None:
        if raw is None:
            return None
        try:
            return LockRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            return None


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
