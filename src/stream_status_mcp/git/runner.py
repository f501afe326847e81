"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    """Execute git commands asynchronously inside a working directory."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def log(self, cwd: Path, *args: str) -> GitExecutionResult:
        return await self._invoke(cwd, "log", *args)

    async def worktree_list(self, cwd: Path) -> GitExecutionResult:
        return await self._invoke(cwd, "worktree", "list", "--porcelain")

    async def merged_branches(self, cwd: Path, base: str) -> GitExecutionResult:
        return await self._invoke(cwd, "branch", "--merged", base, "--format=%(refname:short)")

    async def _invoke(self, cwd: Path, *args: str) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that replays canned git output."""

    def __init__(self, responses: Iterable[GitExecutionResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, tuple[str, ...]]] = []
        self._executable_path = Path("/tmp/fake-git")

    def queue(self, stdout: str, *, returncode: int = 0, stderr: str = "") -> None:
        self._responses.append(
            GitExecutionResult(args=("git",), returncode=returncode, stdout=stdout, stderr=stderr)
        )

    async def _invoke(self, cwd: Path, *args: str) -> GitExecutionResult:  # type: ignore[override]
        self._invocations.append((str(cwd), tuple(args)))
        if self._responses:
            return self._responses.pop(0)
        return GitExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, tuple[str, ...]]]:
        return self._invocations
