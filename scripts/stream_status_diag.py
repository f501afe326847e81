"""Stream status diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from stream_status_mcp.config import StreamStatusSettings
from stream_status_mcp.coordination import pid_alive, read_lock_record
from stream_status_mcp.storage import StoreError, StreamStore


def load_store(settings: StreamStatusSettings) -> StreamStore:
    if not settings.database_path.exists():
        print(f"Database unavailable: {settings.database_path} does not exist")
        raise SystemExit(1)
    try:
        return StreamStore(settings.database_path)
    except StoreError as exc:
        print(f"Database unavailable: {exc}")
        raise SystemExit(1)


def cmd_streams(args: argparse.Namespace) -> None:
    settings = StreamStatusSettings()
    store = load_store(settings)
    streams = store.list(status=args.status)
    if args.json:
        print(json.dumps([stream.to_dict() for stream in streams], indent=2))
        return
    for stream in streams:
        blocker = f" (blocked by {stream.blocked_by})" if stream.blocked_by else ""
        print(f"{stream.id} [{stream.status}] {stream.progress}% {stream.title}{blocker}")


def cmd_commits(args: argparse.Namespace) -> None:
    settings = StreamStatusSettings()
    store = load_store(settings)
    if args.stream_id:
        commits = store.list_commits(args.stream_id, limit=args.limit)
    else:
        commits = store.recent_commits(args.limit)
    for commit in commits:
        print(
            f"{commit.timestamp.isoformat()} {commit.stream_id} {commit.hash[:10]} "
            f"{commit.author}: {commit.message}"
        )


def cmd_stats(args: argparse.Namespace) -> None:
    settings = StreamStatusSettings()
    store = load_store(settings)
    payload = store.quick_stats().to_dict()
    payload["totalStreams"] = store.count_streams()
    print(json.dumps(payload, indent=2))


def cmd_lock(args: argparse.Namespace) -> None:
    settings = StreamStatusSettings()
    record = read_lock_record(settings.lock_file_path)
    if record is None:
        print(f"No dashboard lock at {settings.lock_file_path}")
        return
    payload = record.to_dict()
    payload["alive"] = pid_alive(record.pid)
    payload["lockPath"] = str(settings.lock_file_path)
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream status diagnostics")
    sub = parser.add_subparsers(dest="command")

    p_streams = sub.add_parser("streams", help="List tracked streams")
    p_streams.add_argument("--status", default=None, help="Only streams in this status")
    p_streams.add_argument("--json", action="store_true", help="Output JSON")
    p_streams.set_defaults(func=cmd_streams)

    p_commits = sub.add_parser("commits", help="List recent commits")
    p_commits.add_argument("--stream-id")
    p_commits.add_argument("--limit", type=int, default=20, help="Maximum commits to show")
    p_commits.set_defaults(func=cmd_commits)

    p_stats = sub.add_parser("stats", help="Show stream and commit counts")
    p_stats.set_defaults(func=cmd_stats)

    p_lock = sub.add_parser("lock", help="Show the dashboard lock holder")
    p_lock.set_defaults(func=cmd_lock)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
