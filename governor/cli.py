"""Queue admin CLI: inspect and recover the shared work queue."""

import argparse
import sys
from datetime import datetime

from . import __version__
from .db import Database
from .sessions import SessionStore
from .work_queue import WorkQueue
from .workers import WorkerRegistry, is_stale


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = []
    lines.append("  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _fmt_time(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _open(args: argparse.Namespace) -> Database:
    db = Database(args.db)
    if db.get_schema_version() is None:
        print(f"No governor database at {db.path}", file=sys.stderr)
        sys.exit(1)
    return db


def _confirm(args: argparse.Namespace, prompt: str) -> bool:
    if args.force:
        return True
    answer = input(f"{prompt} [y/N] ")
    if answer.lower() != "y":
        print("Cancelled.")
        return False
    return True


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_list(args: argparse.Namespace) -> None:
    """List queued work in claim order."""
    db = _open(args)
    items = WorkQueue(db).list_pending()

    if not items:
        print("Queue is empty.")
        return

    headers = ["SESSION", "ISSUE", "TYPE", "PRIORITY", "PROJECT", "QUEUED"]
    rows = [
        [
            w.session_id[:8],
            w.issue_identifier,
            w.work_type,
            str(w.priority),
            w.project_name or "-",
            _fmt_time(w.queued_at),
        ]
        for w in items
    ]
    print(_fmt_table(rows, headers))
    print(f"\n{len(items)} item(s) queued")


def cmd_sessions(args: argparse.Namespace) -> None:
    """List session records."""
    db = _open(args)
    sessions = SessionStore(db).list(status=args.status)

    if not sessions:
        print("No sessions found.")
        return

    headers = ["SESSION", "ISSUE", "STATUS", "TYPE", "WORKER", "COST", "UPDATED"]
    rows = [
        [
            s.session_id[:8],
            s.issue_identifier or s.issue_id,
            s.status,
            s.work_type or "-",
            s.worker_id or "-",
            f"${s.total_cost_usd:.2f}",
            _fmt_time(s.updated_at),
        ]
        for s in sessions
    ]
    print(_fmt_table(rows, headers))
    print(f"\n{len(sessions)} session(s)")


def cmd_workers(args: argparse.Namespace) -> None:
    """List registered workers."""
    db = _open(args)
    workers = WorkerRegistry(db).list()

    if not workers:
        print("No workers registered.")
        return

    headers = ["WORKER", "HOST", "STATUS", "ACTIVE", "PROJECTS", "HEARTBEAT"]
    rows = [
        [
            w.id,
            w.hostname or "-",
            w.status + (" (stale)" if is_stale(w) else ""),
            f"{w.active_count}/{w.capacity}",
            ",".join(w.projects) if w.projects else "*",
            _fmt_time(w.last_heartbeat),
        ]
        for w in workers
    ]
    print(_fmt_table(rows, headers))
    print(f"\n{len(workers)} worker(s)")


def cmd_remove(args: argparse.Namespace) -> None:
    """Remove queue items, claims and sessions matching a partial session id."""
    db = _open(args)
    removed = WorkQueue(db).remove_matching(args.session_id)

    if not removed:
        print(f"No session matching: {args.session_id}", file=sys.stderr)
        sys.exit(1)
    for session_id in removed:
        print(f"Removed {session_id}")


def cmd_clear_claims(args: argparse.Namespace) -> None:
    db = _open(args)
    if not _confirm(args, "Clear all claim markers?"):
        return
    print(f"Cleared {WorkQueue(db).clear_claims()} claim(s)")


def cmd_clear_queue(args: argparse.Namespace) -> None:
    db = _open(args)
    if not _confirm(args, "Clear all queued work?"):
        return
    print(f"Cleared {WorkQueue(db).clear_queue()} queue item(s)")


def cmd_clear_all(args: argparse.Namespace) -> None:
    """Clear queue, claims, sessions and worker registrations."""
    db = _open(args)
    if not _confirm(args, "Clear ALL queue, session and worker state?"):
        return
    queue = WorkQueue(db)
    print(f"Cleared {queue.clear_queue()} queue item(s)")
    print(f"Cleared {SessionStore(db).clear_all()} session(s)")
    print(f"Cleared {queue.clear_claims()} claim(s)")
    print(f"Cleared {WorkerRegistry(db).clear()} worker registration(s)")


def cmd_reset(args: argparse.Namespace) -> None:
    """Clear claims and rebuild the queue from unfinished sessions."""
    db = _open(args)
    if not _confirm(args, "Reset work state?"):
        return
    claims, requeued = WorkQueue(db).reset()
    print("Reset complete:")
    print(f"   - Claims cleared: {claims}")
    print(f"   - Sessions re-queued: {requeued}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="governor-admin",
        description="Inspect and recover the governor work queue",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--db", help="Path to state.db (default: $GOVERNOR_DIR/state.db)")
    sub = parser.add_subparsers(dest="command")

    p_list = sub.add_parser("list", help="List queued work")
    p_list.set_defaults(func=cmd_list)

    p_sessions = sub.add_parser("sessions", help="List sessions")
    p_sessions.add_argument("--status", "-s", help="Filter by status (e.g. running)")
    p_sessions.set_defaults(func=cmd_sessions)

    p_workers = sub.add_parser("workers", help="List registered workers")
    p_workers.set_defaults(func=cmd_workers)

    p_remove = sub.add_parser("remove", help="Remove sessions by partial id")
    p_remove.add_argument("session_id", help="Full or partial session id")
    p_remove.set_defaults(func=cmd_remove)

    for name, func, help_text in (
        ("clear-claims", cmd_clear_claims, "Delete all claim markers"),
        ("clear-queue", cmd_clear_queue, "Delete all queued work"),
        ("clear-all", cmd_clear_all, "Delete queue, claims, sessions and workers"),
        ("reset", cmd_reset, "Clear claims and re-queue unfinished sessions"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--force", "-f", action="store_true", help="Skip confirmation")
        p.set_defaults(func=func)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
