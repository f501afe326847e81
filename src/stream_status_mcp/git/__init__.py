"""Git CLI orchestration utilities."""

from .runner import FakeGitRunner, GitExecutionResult, GitNotFoundError, GitRunner, GitRunnerError

__all__ = [
    "FakeGitRunner",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
]
