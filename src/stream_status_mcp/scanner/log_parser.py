"""Parsing of raw ``git log`` output into commit fields."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\x1e"
FIELD_SEPARATOR = "\x1f"

_NUMSTAT_LINE = re.compile(r"^(\d+|-)\t(\d+|-)\t.+$")


@dataclass(slots=True)
class ParsedCommit:
    hash: str
    author: str
    timestamp: datetime
    message: str
    files_changed: int


class CommitLogParser(Protocol):
    """Turns the output of ``git log`` into commits.

    ``log_arguments`` are the formatting flags the parser expects git to be
    invoked with.
    """

    def log_arguments(self) -> list[str]:
        ...

    def parse(self, output: str) -> list[ParsedCommit]:
        ...


class NumstatLogParser:
    """Parser for ``--pretty`` records followed by ``--numstat`` lines."""

    pretty_format = "%x1e%H%x1f%an%x1f%aI%x1f%s"

    def log_arguments(self) -> list[str]:
        return ["--no-color", f"--pretty=format:{self.pretty_format}", "--numstat"]

    def parse(self, output: str) -> list[ParsedCommit]:
        commits: list[ParsedCommit] = []
        for record in output.split(RECORD_SEPARATOR):
            if not record.strip():
                continue
            header, _, body = record.partition("\n")
            parts = header.split(FIELD_SEPARATOR)
            if len(parts) != 4:
                logger.debug("Skipping malformed git log record", extra={"header": header[:200]})
                continue
            commit_hash, author, raw_timestamp, message = (part.strip() for part in parts)
            if not commit_hash:
                continue
            try:
                timestamp = datetime.fromisoformat(raw_timestamp.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Skipping commit with unparsable date", extra={"hash": commit_hash})
                continue
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            files_changed = sum(1 for line in body.splitlines() if _NUMSTAT_LINE.match(line))
            commits.append(
                ParsedCommit(
                    hash=commit_hash,
                    author=author,
                    timestamp=timestamp.astimezone(timezone.utc),
                    message=message,
                    files_changed=files_changed,
                )
            )
        return commits


def format_log_record(commit: ParsedCommit, files: list[str] | None = None) -> str:
    """Render a commit the way ``NumstatLogParser`` expects git to print it."""

    header = FIELD_SEPARATOR.join(
        [commit.hash, commit.author, commit.timestamp.isoformat(), commit.message]
    )
    lines = [f"{RECORD_SEPARATOR}{header}"]
    lines.extend(f"1\t0\t{name}" for name in files or [])
    return "\n".join(lines) + "\n"


__all__ = [
    "CommitLogParser",
    "FIELD_SEPARATOR",
    "NumstatLogParser",
    "ParsedCommit",
    "RECORD_SEPARATOR",
    "format_log_record",
]
