"""Per-session state records in the shared store.

A session is one agent execution against one issue. The governor creates the
record as ``pending`` before queueing the work; the queue flips it to
``claimed`` in the same transaction as the claim; workers move it on from
there.
"""

import logging
import time
from dataclasses import dataclass
from typing import Literal

from .db import Database

logger = logging.getLogger(__name__)


SessionStatus = Literal[
    "pending",
    "claimed",
    "running",
    "finalizing",
    "completed",
    "failed",
    "stopped",
]

# Statuses where an agent is queued for, or working on, the issue
ACTIVE_STATUSES: list[SessionStatus] = ["pending", "claimed", "running", "finalizing"]

# Statuses where the session is over
TERMINAL_STATUSES: list[SessionStatus] = ["completed", "failed", "stopped"]

VALID_STATUSES = set(ACTIVE_STATUSES) | set(TERMINAL_STATUSES)


@dataclass
class SessionRecord:
    session_id: str
    issue_id: str
    issue_identifier: str | None
    status: SessionStatus
    work_type: str | None = None
    project_name: str | None = None
    worker_id: str | None = None
    priority: int | None = None
    queued_at: float | None = None
    claimed_at: float | None = None
    provider_session_id: str | None = None
    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "SessionRecord":
        return cls(**{key: row[key] for key in row.keys()})


class SessionStore:
    """Reads and writes session records."""

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        session_id: str,
        issue_id: str,
        issue_identifier: str | None = None,
        work_type: str | None = None,
        project_name: str | None = None,
        priority: int | None = None,
        queued_at: float | None = None,
        status: SessionStatus = "pending",
    ) -> SessionRecord:
        """Insert a new session record (replacing any with the same id)."""
        now = time.time()
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions (
                    session_id, issue_id, issue_identifier, status, work_type,
                    project_name, priority, queued_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, issue_id, issue_identifier, status, work_type,
                    project_name, priority, queued_at, now, now,
                ),
            )
        logger.debug("Created %s session %s for %s", status, session_id, issue_identifier or issue_id)
        return self.get(session_id)

    def create_if_idle(
        self,
        session_id: str,
        issue_id: str,
        issue_identifier: str | None = None,
        work_type: str | None = None,
        project_name: str | None = None,
        priority: int | None = None,
        queued_at: float | None = None,
    ) -> SessionRecord | None:
        """Insert a pending session unless the issue already has an active one.

        The check and the insert share one ``BEGIN IMMEDIATE`` transaction,
        so of several governors racing on the same issue exactly one wins.

        Returns:
            The new record, or None if the issue was already busy
        """
        now = time.time()
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        with self.db.transaction() as conn:
            busy = conn.execute(
                f"SELECT session_id FROM sessions WHERE issue_id = ? AND status IN ({placeholders}) LIMIT 1",
                (issue_id, *ACTIVE_STATUSES),
            ).fetchone()
            if busy:
                logger.info(
                    "Not creating session for %s: session %s is still active",
                    issue_identifier or issue_id, busy["session_id"],
                )
                return None
            conn.execute(
                """
                INSERT INTO sessions (
                    session_id, issue_id, issue_identifier, status, work_type,
                    project_name, priority, queued_at, created_at, updated_at
                ) VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, issue_id, issue_identifier, work_type,
                    project_name, priority, queued_at, now, now,
                ),
            )
        logger.debug("Created pending session %s for %s", session_id, issue_identifier or issue_id)
        return self.get(session_id)

    def get(self, session_id: str) -> SessionRecord | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return SessionRecord.from_row(row) if row else None

    def list(self, status: str | None = None) -> list[SessionRecord]:
        """List sessions, newest first, optionally filtered by status."""
        query = "SELECT * FROM sessions"
        params: tuple = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY created_at DESC"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [SessionRecord.from_row(r) for r in rows]

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        worker_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a session to a new status. Returns False if it doesn't exist."""
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid session status: {status}")

        now = time.time()
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET status = ?,
                    worker_id = COALESCE(?, worker_id),
                    error = COALESCE(?, error),
                    updated_at = ?
                WHERE session_id = ?
                """,
                (status, worker_id, error, now, session_id),
            )
            return cursor.rowcount > 0

    def record_cost(
        self,
        session_id: str,
        total_cost_usd: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> bool:
        """Accumulate cost accounting onto a session."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET total_cost_usd = total_cost_usd + ?,
                    input_tokens = input_tokens + ?,
                    output_tokens = output_tokens + ?,
                    updated_at = ?
                WHERE session_id = ?
                """,
                (total_cost_usd, input_tokens, output_tokens, time.time(), session_id),
            )
            return cursor.rowcount > 0

    def set_provider_session_id(self, session_id: str, provider_session_id: str) -> bool:
        """Store the agent provider's resume token for a session."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET provider_session_id = ?, updated_at = ? WHERE session_id = ?",
                (provider_session_id, time.time(), session_id),
            )
            return cursor.rowcount > 0

    def has_active_session(self, issue_id: str) -> bool:
        """True if any session for the issue is pending, claimed or running."""
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT 1 FROM sessions WHERE issue_id = ? AND status IN ({placeholders}) LIMIT 1",
                (issue_id, *ACTIVE_STATUSES),
            ).fetchone()
        return row is not None

    def issue_cost(self, issue_id: str) -> float:
        """Total spend across every session for an issue."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(total_cost_usd), 0) AS total FROM sessions WHERE issue_id = ?",
                (issue_id,),
            ).fetchone()
        return float(row["total"])

    def delete(self, session_id: str) -> bool:
        with self.db.connection() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            return cursor.rowcount > 0

    def clear_all(self) -> int:
        """Delete every session record. Returns the number deleted."""
        with self.db.connection() as conn:
            count = conn.execute("DELETE FROM sessions").rowcount
        logger.info("Cleared %d session(s)", count)
        return count
