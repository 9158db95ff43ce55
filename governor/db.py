"""SQLite backend for the governor's shared state.

One database file holds everything that must be shared between governor
instances and workers: the pending work queue, claim markers, session and
worker records, overrides, escalation tracking, touchpoints and the
cross-process event bus. Every component receives a ``Database`` explicitly;
there is no module-level connection.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import get_database_path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


class Database:
    """Handle on the shared SQLite store.

    Args:
        path: Database file. Defaults to ``get_database_path()``.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else get_database_path()

    def _connect(self, isolation_level: str | None = "") -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=isolation_level)
        conn.row_factory = sqlite3.Row
        # Enable foreign key constraints
        conn.execute("PRAGMA foreign_keys=ON")
        # Ensure writes are durable
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection that commits on success and rolls back on error.

        Yields:
            SQLite connection with transaction management
        """
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run the block inside a ``BEGIN IMMEDIATE`` transaction.

        The write lock is taken before the first read, so a select-then-delete
        inside the block cannot interleave with another writer. This is what
        makes queue claims atomic across processes.
        """
        conn = self._connect(isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create all tables if they don't exist. Safe to call multiple times."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            # WAL lets workers read while a claim holds the write lock
            conn.execute("PRAGMA journal_mode=WAL")

            # Pending work, ordered by priority then age then insertion
            conn.execute("""
                CREATE TABLE IF NOT EXISTS work_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL UNIQUE,
                    issue_id TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    queued_at REAL NOT NULL,
                    project_name TEXT,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_work_queue_order
                ON work_queue(priority, queued_at, seq)
            """)

            # Claim markers, one per claimed session
            conn.execute("""
                CREATE TABLE IF NOT EXISTS work_claims (
                    session_id TEXT PRIMARY KEY,
                    worker_id TEXT NOT NULL,
                    claimed_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    issue_id TEXT NOT NULL,
                    issue_identifier TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    work_type TEXT,
                    project_name TEXT,
                    worker_id TEXT,
                    priority INTEGER,
                    queued_at REAL,
                    claimed_at REAL,
                    provider_session_id TEXT,
                    total_cost_usd REAL DEFAULT 0,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    error TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_issue ON sessions(issue_id, status)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS workers (
                    id TEXT PRIMARY KEY,
                    hostname TEXT,
                    capacity INTEGER NOT NULL DEFAULT 1,
                    active_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    version TEXT,
                    projects TEXT,
                    registered_at REAL NOT NULL,
                    last_heartbeat REAL NOT NULL
                )
            """)

            # Human directives, expired lazily on read
            conn.execute("""
                CREATE TABLE IF NOT EXISTS overrides (
                    issue_id TEXT PRIMARY KEY,
                    directive TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at REAL NOT NULL,
                    expires_at REAL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_state (
                    issue_id TEXT PRIMARY KEY,
                    cycle_count INTEGER NOT NULL DEFAULT 0,
                    strategy TEXT NOT NULL DEFAULT 'normal',
                    failure_summary TEXT,
                    qa_failed_at REAL,
                    updated_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS touchpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    issue_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    body TEXT NOT NULL,
                    posted_at REAL NOT NULL,
                    timeout_seconds REAL,
                    responded_at REAL,
                    auto_proceeded_at REAL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_touchpoints_issue ON touchpoints(issue_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS processing_state (
                    issue_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    session_id TEXT,
                    completed_at REAL NOT NULL,
                    PRIMARY KEY (issue_id, phase)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS governor_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL,
                    published_at REAL NOT NULL,
                    delivered_at REAL,
                    acked_at REAL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS event_dedup (
                    key TEXT PRIMARY KEY,
                    seen_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

        logger.debug("Initialized governor schema v%s at %s", SCHEMA_VERSION, self.path)

    def get_schema_version(self) -> int | None:
        """Get current schema version, or None if the schema is not initialized."""
        if not self.path.exists():
            return None

        try:
            with self.connection() as conn:
                row = conn.execute(
                    "SELECT value FROM schema_info WHERE key = 'version'"
                ).fetchone()
                return int(row["value"]) if row else None
        except sqlite3.OperationalError:
            return None


def open_database(path: Path | str | None = None) -> Database:
    """Construct a Database and make sure its schema exists."""
    db = Database(path)
    db.init_schema()
    return db
