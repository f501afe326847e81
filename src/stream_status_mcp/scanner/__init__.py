"""Git history scanning for stream worktrees."""

from .commits import (
    DEFAULT_BASE_BRANCH,
    MAIN_STREAM_ID,
    CommitScanner,
    ScanError,
    ScanSummary,
    StreamScanResult,
)
from .log_parser import CommitLogParser, NumstatLogParser, ParsedCommit
from .reconciliation import (
    ReconciliationEntry,
    ReconciliationReport,
    WorktreeReconciler,
    parse_merged_branches,
)
from .worktrees import WorktreeInfo, discover_worktrees, list_worktrees, parse_worktree_list

__all__ = [
    "CommitLogParser",
    "CommitScanner",
    "DEFAULT_BASE_BRANCH",
    "MAIN_STREAM_ID",
    "NumstatLogParser",
    "ParsedCommit",
    "ReconciliationEntry",
    "ReconciliationReport",
    "ScanError",
    "ScanSummary",
    "StreamScanResult",
    "WorktreeInfo",
    "WorktreeReconciler",
    "discover_worktrees",
    "list_worktrees",
    "parse_merged_branches",
    "parse_worktree_list",
]
