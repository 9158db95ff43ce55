"""Distributed work queue with atomic claims.

Pending work lives in the ``work_queue`` table, one row per session, ordered
by ``(priority, queued_at, seq)``. A claim selects, deletes and records the
claim marker inside one ``BEGIN IMMEDIATE`` transaction, so the store (not
the caller) guarantees that a session id is handed to at most one worker.
A lost race is not an error: the loser simply gets ``None``.
"""

import json
import logging
import sqlite3
import time
from typing import Any, Iterable

from .db import Database
from .models import QueuedWork

logger = logging.getLogger(__name__)

# Claim markers older than this are treated as stale by recovery tooling
DEFAULT_CLAIM_TTL_SECONDS = 60 * 60


def _project_filter(allowed_projects: Iterable[str] | None) -> tuple[str, list[Any]]:
    """Build the WHERE fragment admitting tagged-and-allowed or untagged items."""
    if allowed_projects is None:
        return "", []
    projects = list(allowed_projects)
    if not projects:
        return "WHERE project_name IS NULL", []
    placeholders = ", ".join("?" for _ in projects)
    return f"WHERE (project_name IS NULL OR project_name IN ({placeholders}))", projects


class WorkQueue:
    """Shared queue of dispatched-but-unclaimed work.

    Args:
        db: Shared store
    """

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Hot path
    # ------------------------------------------------------------------

    def enqueue(self, work: QueuedWork) -> bool:
        """Add work to the queue.

        Returns:
            True if queued, False if the session is already queued
        """
        try:
            with self.db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO work_queue (
                        session_id, issue_id, priority, queued_at, project_name, payload
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        work.session_id,
                        work.issue_id,
                        work.priority,
                        work.queued_at,
                        work.project_name,
                        json.dumps(work.to_dict()),
                    ),
                )
        except sqlite3.IntegrityError:
            logger.warning("Session %s is already queued", work.session_id)
            return False

        logger.info(
            "Queued %s work for %s (session=%s priority=%d project=%s)",
            work.work_type, work.issue_identifier, work.session_id,
            work.priority, work.project_name,
        )
        return True

    def claim(
        self,
        worker_id: str,
        allowed_projects: Iterable[str] | None = None,
    ) -> QueuedWork | None:
        """Atomically take the next eligible item for a worker.

        Args:
            worker_id: Claiming worker
            allowed_projects: If given, only items tagged with one of these
                projects, or untagged, are eligible

        Returns:
            The claimed work, or None if nothing eligible is queued
        """
        where, params = _project_filter(allowed_projects)
        now = time.time()

        with self.db.transaction() as conn:
            row = conn.execute(
                f"""
                SELECT session_id, payload FROM work_queue
                {where}
                ORDER BY priority ASC, queued_at ASC, seq ASC
                LIMIT 1
                """,
                params,
            ).fetchone()
            if not row:
                return None

            self._take(conn, row["session_id"], worker_id, now)
            work = QueuedWork.from_dict(json.loads(row["payload"]))

        logger.info("Worker %s claimed session %s (%s)", worker_id, work.session_id, work.issue_identifier)
        return work

    def claim_session(self, session_id: str, worker_id: str) -> QueuedWork | None:
        """Atomically claim a specific session, e.g. one picked from ``peek``.

        Returns:
            The work if this worker won the claim, otherwise None
        """
        now = time.time()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT session_id, payload FROM work_queue WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if not row:
                return None

            self._take(conn, session_id, worker_id, now)
            work = QueuedWork.from_dict(json.loads(row["payload"]))

        logger.info("Worker %s claimed session %s (%s)", worker_id, work.session_id, work.issue_identifier)
        return work

    @staticmethod
    def _take(conn: sqlite3.Connection, session_id: str, worker_id: str, now: float) -> None:
        """Remove a queued row and mark it claimed. Caller holds the write lock."""
        conn.execute("DELETE FROM work_queue WHERE session_id = ?", (session_id,))
        conn.execute(
            "INSERT OR REPLACE INTO work_claims (session_id, worker_id, claimed_at) VALUES (?, ?, ?)",
            (session_id, worker_id, now),
        )
        conn.execute(
            """
            UPDATE sessions
            SET status = 'claimed', worker_id = ?, claimed_at = ?, updated_at = ?
            WHERE session_id = ?
            """,
            (worker_id, now, now, session_id),
        )

    def depth(self) -> int:
        """Number of items waiting to be claimed."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM work_queue").fetchone()
        return row["n"]

    def remove(self, session_id: str) -> bool:
        """Drop a queued item without claiming it.

        Returns:
            True if an item was removed
        """
        with self.db.connection() as conn:
            cursor = conn.execute("DELETE FROM work_queue WHERE session_id = ?", (session_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Removed session %s from queue", session_id)
        return removed

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def peek(
        self,
        limit: int = 10,
        allowed_projects: Iterable[str] | None = None,
    ) -> list[QueuedWork]:
        """Look at the next items in claim order without claiming them."""
        where, params = _project_filter(allowed_projects)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT payload FROM work_queue
                {where}
                ORDER BY priority ASC, queued_at ASC, seq ASC
                LIMIT ?
                """,
                (*params, limit),
            ).fetchall()
        return [QueuedWork.from_dict(json.loads(r["payload"])) for r in rows]

    def list_pending(self) -> list[QueuedWork]:
        """Every queued item in claim order."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT payload FROM work_queue ORDER BY priority ASC, queued_at ASC, seq ASC"
            ).fetchall()
        return [QueuedWork.from_dict(json.loads(r["payload"])) for r in rows]

    def is_queued(self, session_id: str) -> bool:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM work_queue WHERE session_id = ?", (session_id,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Claim markers
    # ------------------------------------------------------------------

    def get_claim_owner(self, session_id: str) -> str | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT worker_id FROM work_claims WHERE session_id = ?", (session_id,)
            ).fetchone()
        return row["worker_id"] if row else None

    def release_claim(self, session_id: str) -> bool:
        """Delete a claim marker once the worker has finished with the session."""
        with self.db.connection() as conn:
            cursor = conn.execute("DELETE FROM work_claims WHERE session_id = ?", (session_id,))
            return cursor.rowcount > 0

    def expired_claims(self, ttl_seconds: float = DEFAULT_CLAIM_TTL_SECONDS) -> list[dict[str, Any]]:
        """Claim markers older than ``ttl_seconds``: likely abandoned by a dead worker."""
        cutoff = time.time() - ttl_seconds
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM work_claims WHERE claimed_at < ? ORDER BY claimed_at",
                (cutoff,),
            ).fetchall()
        return [dict(r) for r in rows]

    def requeue(self, work: QueuedWork, priority_boost: int = 1) -> bool:
        """Put previously claimed work back, ahead of where it was.

        The claim marker is released and the session returns to pending.
        Priority never goes below 0, the rank of a high override.
        """
        boosted = QueuedWork.from_dict({
            **work.to_dict(),
            "priority": max(0, work.priority - priority_boost),
            "queued_at": time.time(),
        })
        now = time.time()
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM work_claims WHERE session_id = ?", (work.session_id,))
            conn.execute(
                """
                UPDATE sessions
                SET status = 'pending', worker_id = NULL, claimed_at = NULL, updated_at = ?
                WHERE session_id = ?
                """,
                (now, work.session_id),
            )
        requeued = self.enqueue(boosted)
        if requeued:
            logger.info("Requeued session %s at priority %d", work.session_id, boosted.priority)
        return requeued

    # ------------------------------------------------------------------
    # Operator recovery
    # ------------------------------------------------------------------

    def remove_matching(self, partial_session_id: str) -> list[str]:
        """Remove every queued item, claim and session record whose id contains the text.

        Returns:
            Session ids that were removed
        """
        pattern = f"%{partial_session_id}%"
        with self.db.connection() as conn:
            queued = [
                r["session_id"] for r in conn.execute(
                    "SELECT session_id FROM work_queue WHERE session_id LIKE ?", (pattern,)
                ).fetchall()
            ]
            claimed = [
                r["session_id"] for r in conn.execute(
                    "SELECT session_id FROM work_claims WHERE session_id LIKE ?", (pattern,)
                ).fetchall()
            ]
            sessions = [
                r["session_id"] for r in conn.execute(
                    "SELECT session_id FROM sessions WHERE session_id LIKE ?", (pattern,)
                ).fetchall()
            ]
            conn.execute("DELETE FROM work_queue WHERE session_id LIKE ?", (pattern,))
            conn.execute("DELETE FROM work_claims WHERE session_id LIKE ?", (pattern,))
            conn.execute("DELETE FROM sessions WHERE session_id LIKE ?", (pattern,))

        removed = sorted(set(queued) | set(claimed) | set(sessions))
        logger.info("Removed %d session(s) matching %r", len(removed), partial_session_id)
        return removed

    def clear_claims(self) -> int:
        """Delete every claim marker. Returns the number deleted."""
        with self.db.connection() as conn:
            count = conn.execute("DELETE FROM work_claims").rowcount
        logger.info("Cleared %d claim marker(s)", count)
        return count

    def clear_queue(self) -> int:
        """Delete every pending item. Returns the number deleted."""
        with self.db.connection() as conn:
            count = conn.execute("DELETE FROM work_queue").rowcount
        logger.info("Cleared %d queued item(s)", count)
        return count

    def reset(self) -> tuple[int, int]:
        """Rebuild the queue from session records after a crash or a stuck fleet.

        Clears every claim and queued item, then re-queues each session that
        is still pending, claimed or running as a fresh pending item. Prompts
        are not kept in session records, so re-queued work carries none.

        Returns:
            (claims cleared, sessions re-queued)
        """
        now = time.time()
        with self.db.transaction() as conn:
            claims = conn.execute("DELETE FROM work_claims").rowcount
            conn.execute("DELETE FROM work_queue")
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE status IN ('pending', 'claimed', 'running')
                ORDER BY COALESCE(queued_at, created_at)
                """
            ).fetchall()

            for row in rows:
                work = QueuedWork(
                    session_id=row["session_id"],
                    issue_id=row["issue_id"],
                    issue_identifier=row["issue_identifier"] or row["issue_id"],
                    priority=row["priority"] if row["priority"] is not None else 3,
                    queued_at=row["queued_at"] or row["created_at"],
                    work_type=row["work_type"] or "development",
                    project_name=row["project_name"],
                )
                conn.execute(
                    """
                    INSERT INTO work_queue (
                        session_id, issue_id, priority, queued_at, project_name, payload
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        work.session_id, work.issue_id, work.priority, work.queued_at,
                        work.project_name, json.dumps(work.to_dict()),
                    ),
                )
                conn.execute(
                    """
                    UPDATE sessions
                    SET status = 'pending', worker_id = NULL, claimed_at = NULL,
                        provider_session_id = NULL, updated_at = ?
                    WHERE session_id = ?
                    """,
                    (now, work.session_id),
                )

        logger.info("Reset queue: cleared %d claim(s), re-queued %d session(s)", claims, len(rows))
        return claims, len(rows)
