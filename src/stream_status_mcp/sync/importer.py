"""Import stream definitions from plan files into the store."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

import yaml
from pydantic import ValidationError

from ..scanner import WorktreeInfo
from ..streams import LifecycleError, StreamLifecycle
from .models import StreamDefinition

logger = logging.getLogger(__name__)

_FRONTMATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_HEADING = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
_STREAM_NUMBER = re.compile(r"stream-(\d+)")

WorktreeLookup = Callable[[], Awaitable[Mapping[str, WorktreeInfo]]]


class StreamFileError(ValueError):
    """Raised when a single stream definition file cannot be parsed."""


@dataclass(slots=True)
class SyncResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    worktrees_discovered: int = 0

    @property
    def synced(self) -> int:
        return self.created + self.updated + self.unchanged

    def as_dict(self) -> dict[str, int]:
        return {
            "synced": self.synced,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "worktreesDiscovered": self.worktrees_discovered,
        }


def parse_stream_file(
    path: Path,
    stream_id: str,
    *,
    worktree_root: Path,
    worktrees: Mapping[str, WorktreeInfo] | None = None,
) -> StreamDefinition:
    """Parse one plan file into a :class:`StreamDefinition`."""

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StreamFileError(f"Failed to read {path}: {exc}") from exc

    frontmatter: dict[str, Any] = {}
    match = _FRONTMATTER.match(content)
    if match:
        try:
            document = yaml.safe_load(match.group(1))
        except yaml.YAMLError as exc:
            raise StreamFileError(f"Failed to parse YAML frontmatter in {path}: {exc}") from exc
        if document is not None and not isinstance(document, dict):
            raise StreamFileError(f"Frontmatter in {path} must be a mapping")
        frontmatter = dict(document or {})

    data: dict[str, Any] = dict(frontmatter)
    data["id"] = stream_id

    if not data.get("title"):
        heading = _HEADING.search(content[match.end():] if match else content)
        data["title"] = heading.group(1) if heading else stream_id

    if not (data.get("streamNumber") or data.get("stream_number")):
        number = _STREAM_NUMBER.search(stream_id)
        data["stream_number"] = number.group(1) if number else "0000"

    try:
        definition = StreamDefinition.model_validate(data)
    except ValidationError as exc:
        raise StreamFileError(f"Stream definition validation error in {path}: {exc}") from exc

    if definition.branch is None:
        definition.branch = stream_id
    if definition.worktree_path is None:
        worktree = None
        if worktrees:
            worktree = worktrees.get(stream_id) or worktrees.get(definition.branch)
        definition.worktree_path = str(worktree.path if worktree else worktree_root / stream_id)
    return definition


def order_by_blockers(definitions: list[StreamDefinition]) -> list[StreamDefinition]:
    """Order definitions so that every blocker precedes the streams it blocks.

    Blockers outside the batch and dependency cycles are left for the
    lifecycle to reject.
    """

    index = {definition.id: position for position, definition in enumerate(definitions)}
    ordered: list[StreamDefinition] = []
    placed: set[int] = set()
    for position in sorted(range(len(definitions)), key=lambda p: definitions[p].id):
        chain: list[int] = []
        cursor: int | None = position
        while cursor is not None and cursor not in placed and cursor not in chain:
            chain.append(cursor)
            blocker = definitions[cursor].blocked_by
            cursor = index.get(blocker) if blocker else None
        for item in reversed(chain):
            placed.add(item)
            ordered.append(definitions[item])
    return ordered


class StreamFileImporter:
    """Idempotent upsert of plan-file stream definitions.

    Definitions live either as ``<id>.md`` or as ``<id>/README.md`` under
    ``streams_dir``. New ids are created; existing streams only get their
    descriptive fields refreshed, never their lifecycle state.
    """

    def __init__(
        self,
        lifecycle: StreamLifecycle,
        streams_dir: Path,
        worktree_root: Path,
        *,
        worktree_lookup: WorktreeLookup | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._streams_dir = Path(streams_dir)
        self._worktree_root = Path(worktree_root)
        self._worktree_lookup = worktree_lookup

    @property
    def streams_dir(self) -> Path:
        return self._streams_dir

    def iter_definition_files(self) -> tuple[list[tuple[str, Path]], int]:
        """Return ``(stream_id, markdown_path)`` pairs plus the count of skipped entries."""

        if not self._streams_dir.is_dir():
            return [], 0

        entries: list[tuple[str, Path]] = []
        skipped = 0
        for entry in sorted(self._streams_dir.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.is_dir():
                readme = entry / "README.md"
                if readme.is_file():
                    entries.append((entry.name, readme))
                else:
                    skipped += 1
            elif entry.suffix == ".md":
                entries.append((entry.stem, entry))
            else:
                skipped += 1
        return entries, skipped

    async def sync(self) -> SyncResult:
        result = SyncResult()

        worktrees: Mapping[str, WorktreeInfo] = {}
        if self._worktree_lookup is not None:
            try:
                worktrees = await self._worktree_lookup()
            except Exception as exc:
                logger.warning("Worktree discovery failed; using default paths", extra={"error": str(exc)})
        result.worktrees_discovered = len({info.path for info in worktrees.values()})

        files, result.skipped = self.iter_definition_files()
        definitions: list[StreamDefinition] = []
        for stream_id, path in files:
            try:
                definitions.append(
                    parse_stream_file(
                        path, stream_id, worktree_root=self._worktree_root, worktrees=worktrees
                    )
                )
            except StreamFileError as exc:
                result.errors += 1
                logger.warning("Skipping stream definition", extra={"path": str(path), "error": str(exc)})

        definitions = order_by_blockers(definitions)
        for definition in definitions:
            try:
                outcome = self._upsert(definition)
            except LifecycleError as exc:
                result.errors += 1
                logger.warning(
                    "Failed to sync stream",
                    extra={"stream_id": definition.id, "error": str(exc)},
                )
                continue
            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.unchanged += 1

        logger.info(
            "Stream sync complete",
            extra={"synced": result.synced, "sync_errors": result.errors, "skipped": result.skipped},
        )
        return result

    def _upsert(self, definition: StreamDefinition) -> str:
        store = self._lifecycle.store
        if not store.exists(definition.id):
            self._lifecycle.create_stream(
                stream_id=definition.id,
                number=definition.stream_number,
                title=definition.title,
                category=definition.category,
                priority=definition.priority,
                worktree_path=definition.worktree_path or str(self._worktree_root / definition.id),
                branch=definition.branch or definition.id,
                estimated_phases=definition.phases,
                status=definition.status,
                blocked_by=definition.blocked_by if definition.status == "blocked" else None,
            )
            return "created"

        existing = store.get(definition.id)
        if existing.status == "archived":
            return "unchanged"
        desired = {
            "number": definition.stream_number,
            "title": definition.title,
            "category": definition.category,
            "priority": definition.priority,
        }
        changes = {
            name: value for name, value in desired.items() if getattr(existing, name) != value
        }
        if not changes:
            return "unchanged"
        with store.transaction():
            store.update(definition.id, **changes)
            store.add_history(
                definition.id,
                "synced",
                old_value=", ".join(f"{name}={getattr(existing, name)}" for name in sorted(changes)),
                new_value=", ".join(f"{name}={changes[name]}" for name in sorted(changes)),
            )
        return "updated"


__all__ = [
    "StreamFileError",
    "StreamFileImporter",
    "SyncResult",
    "order_by_blockers",
    "parse_stream_file",
]
