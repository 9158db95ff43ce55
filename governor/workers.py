"""Worker registrations and the worker-side poll for work."""

import json
import logging
import socket
import time
from dataclasses import dataclass
from typing import Literal

from .db import Database
from .models import QueuedWork
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

WorkerStatus = Literal["active", "draining", "offline"]

# Workers that miss heartbeats for this long are considered stale
DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 90

# Upper bound on items handed to one worker per poll
MAX_CLAIMS_PER_POLL = 5


@dataclass
class WorkerInfo:
    id: str
    hostname: str | None
    capacity: int
    active_count: int
    status: WorkerStatus
    registered_at: float
    last_heartbeat: float
    version: str | None = None
    projects: list[str] | None = None

    @property
    def available_slots(self) -> int:
        return max(0, self.capacity - self.active_count)

    @classmethod
    def from_row(cls, row) -> "WorkerInfo":
        projects = json.loads(row["projects"]) if row["projects"] else None
        return cls(
            id=row["id"],
            hostname=row["hostname"],
            capacity=row["capacity"],
            active_count=row["active_count"],
            status=row["status"],
            registered_at=row["registered_at"],
            last_heartbeat=row["last_heartbeat"],
            version=row["version"],
            projects=projects,
        )


class WorkerRegistry:
    """Worker registration records in the shared store."""

    def __init__(self, db: Database):
        self.db = db

    def register(
        self,
        worker_id: str,
        capacity: int,
        hostname: str | None = None,
        version: str | None = None,
        projects: list[str] | None = None,
    ) -> WorkerInfo:
        """Register (or re-register) a worker as active."""
        now = time.time()
        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO workers (
                    id, hostname, capacity, active_count, status, version,
                    projects, registered_at, last_heartbeat
                ) VALUES (?, ?, ?, 0, 'active', ?, ?, ?, ?)
                """,
                (
                    worker_id,
                    hostname or socket.gethostname(),
                    capacity,
                    version,
                    json.dumps(projects) if projects else None,
                    now,
                    now,
                ),
            )
        logger.info("Registered worker %s (capacity=%d projects=%s)", worker_id, capacity, projects)
        return self.get(worker_id)

    def heartbeat(
        self,
        worker_id: str,
        active_count: int,
        status: WorkerStatus | None = None,
    ) -> bool:
        """Refresh a worker's heartbeat. Returns False for unknown workers."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE workers
                SET last_heartbeat = ?, active_count = ?, status = COALESCE(?, status)
                WHERE id = ?
                """,
                (time.time(), active_count, status, worker_id),
            )
            return cursor.rowcount > 0

    def get(self, worker_id: str) -> WorkerInfo | None:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM workers WHERE id = ?", (worker_id,)).fetchone()
        return WorkerInfo.from_row(row) if row else None

    def list(self) -> list[WorkerInfo]:
        with self.db.connection() as conn:
            rows = conn.execute("SELECT * FROM workers ORDER BY registered_at").fetchall()
        return [WorkerInfo.from_row(r) for r in rows]

    def deregister(self, worker_id: str) -> bool:
        with self.db.connection() as conn:
            cursor = conn.execute("DELETE FROM workers WHERE id = ?", (worker_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Deregistered worker %s", worker_id)
        return removed

    def clear(self) -> int:
        """Delete every worker registration. Returns the number deleted."""
        with self.db.connection() as conn:
            count = conn.execute("DELETE FROM workers").rowcount
        logger.info("Cleared %d worker registration(s)", count)
        return count

    def stale_workers(
        self,
        timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        now: float | None = None,
    ) -> "list[WorkerInfo]":
        """Workers whose last heartbeat is older than ``timeout_seconds``."""
        now = time.time() if now is None else now
        return [w for w in self.list() if is_stale(w, timeout_seconds, now)]


def is_stale(
    worker: WorkerInfo,
    timeout_seconds: float = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    now: float | None = None,
) -> bool:
    now = time.time() if now is None else now
    return now - worker.last_heartbeat > timeout_seconds


def poll_for_work(
    registry: WorkerRegistry,
    queue: WorkQueue,
    worker_id: str,
) -> list[QueuedWork]:
    """Claim as much work as the worker has free slots for.

    Honors the worker's registered project filter. Returns immediately with
    whatever could be claimed; an empty list means nothing was eligible.
    """
    worker = registry.get(worker_id)
    if worker is None:
        logger.warning("Poll from unregistered worker %s", worker_id)
        return []
    if worker.status != "active":
        logger.debug("Worker %s is %s, not handing out work", worker_id, worker.status)
        return []

    claimed: list[QueuedWork] = []
    for _ in range(min(worker.available_slots, MAX_CLAIMS_PER_POLL)):
        work = queue.claim(worker_id, allowed_projects=worker.projects)
        if work is None:
            break
        claimed.append(work)

    if claimed:
        registry.heartbeat(worker_id, worker.active_count + len(claimed))
    return claimed
