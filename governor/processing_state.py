"""Records of completed top-of-funnel phases (research, backlog creation)."""

import logging
import time
from typing import Literal

from .db import Database

logger = logging.getLogger(__name__)

ProcessingPhase = Literal["research", "backlog-creation"]


class ProcessingStateStore:
    def __init__(self, db: Database):
        self.db = db

    def mark_completed(
        self,
        issue_id: str,
        phase: ProcessingPhase,
        session_id: str | None = None,
    ) -> None:
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO processing_state (issue_id, phase, session_id, completed_at)
                VALUES (?, ?, ?, ?)
                """,
                (issue_id, phase, session_id, time.time()),
            )
        logger.info("Marked %s complete for %s", phase, issue_id)

    def is_completed(self, issue_id: str, phase: ProcessingPhase) -> bool:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM processing_state WHERE issue_id = ? AND phase = ?",
                (issue_id, phase),
            ).fetchone()
        return row is not None

    def clear(self, issue_id: str, phase: ProcessingPhase | None = None) -> int:
        """Forget completed phases so the issue can be re-processed."""
        with self.db.connection() as conn:
            if phase:
                cursor = conn.execute(
                    "DELETE FROM processing_state WHERE issue_id = ? AND phase = ?",
                    (issue_id, phase),
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM processing_state WHERE issue_id = ?", (issue_id,)
                )
            return cursor.rowcount
