"""Event buses and deduplicators for the event-driven governor.

A bus hands out ``(event_id, event)`` pairs from ``subscribe()`` and expects
each one to be acked once handled. The in-memory bus serves a single
process; the SQLite bus lets webhook receivers in other processes publish to
a governor through the shared store.

Deduplicators answer "have I seen this key inside the window?" and record
the key in the same call.
"""

import json
import logging
import queue
import threading
import time
from typing import Callable, Iterator, Protocol

from .db import Database
from .events import GovernorEvent, event_from_dict, event_to_dict
from .exceptions import EventBusClosedError, MalformedEventError

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 10

_CLOSED = object()


class GovernorEventBus(Protocol):
    def publish(self, event: GovernorEvent) -> str: ...

    def subscribe(self) -> Iterator[tuple[str, GovernorEvent]]: ...

    def ack(self, event_id: str) -> None: ...

    def close(self) -> None: ...

    def reopen(self) -> None: ...


class EventDeduplicator(Protocol):
    def seen(self, key: str, window_seconds: float | None = None) -> bool: ...


# =============================================================================
# In-memory
# =============================================================================


class InMemoryEventBus:
    """Single-process FIFO bus."""

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._counter = 0
        self._acked: set[str] = set()

    def publish(self, event: GovernorEvent) -> str:
        with self._lock:
            if self._closed:
                raise EventBusClosedError("Event bus is closed")
            self._counter += 1
            event_id = f"mem-{self._counter}"
            self._queue.put((event_id, event))
        return event_id

    def subscribe(self) -> Iterator[tuple[str, GovernorEvent]]:
        """Yield events as they arrive. Ends once the bus is closed."""
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                # Let any other subscriber see the close too
                self._queue.put(_CLOSED)
                return
            yield item

    def ack(self, event_id: str) -> None:
        with self._lock:
            self._acked.add(event_id)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_CLOSED)

    def reopen(self) -> None:
        """Accept events again after ``close()``. Undelivered events are kept."""
        with self._lock:
            if not self._closed:
                return
            pending = [item for item in list(self._queue.queue) if item is not _CLOSED]
            self._queue = queue.Queue()
            for item in pending:
                self._queue.put(item)
            self._closed = False

    def is_acked(self, event_id: str) -> bool:
        return event_id in self._acked

    @property
    def pending_count(self) -> int:
        return sum(1 for item in list(self._queue.queue) if item is not _CLOSED)

    @property
    def is_closed(self) -> bool:
        return self._closed


class InMemoryEventDeduplicator:
    """Remembers when each key was last seen, in a dict."""

    def __init__(
        self,
        window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.clock = clock
        self._seen: dict[str, float] = {}  # key -> seen_at
        self._lock = threading.Lock()

    def seen(self, key: str, window_seconds: float | None = None) -> bool:
        """True if ``key`` was seen inside the window; records it otherwise."""
        window = self.window_seconds if window_seconds is None else window_seconds
        now = self.clock()
        with self._lock:
            self._cleanup(now, max(window, self.window_seconds))
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < window:
                return True
            self._seen[key] = now
            return False

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    @property
    def size(self) -> int:
        with self._lock:
            self._cleanup(self.clock(), self.window_seconds)
            return len(self._seen)

    def _cleanup(self, now: float, window: float) -> None:
        for key in [k for k, seen_at in self._seen.items() if now - seen_at >= window]:
            del self._seen[key]


# =============================================================================
# SQLite (shared store)
# =============================================================================


class SqliteEventBus:
    """Bus backed by the ``governor_events`` table.

    Delivered-but-unacked events become visible again after
    ``visibility_timeout_seconds``, so an event is delivered at least once even
    if its consumer dies mid-handling.

    Args:
        db: Shared store
        poll_interval_seconds: How often an idle subscriber checks for new rows
        visibility_timeout_seconds: When an unacked delivery is retried
    """

    def __init__(
        self,
        db: Database,
        poll_interval_seconds: float = 0.5,
        visibility_timeout_seconds: float = 60,
    ):
        self.db = db
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._closed = threading.Event()

    def publish(self, event: GovernorEvent) -> str:
        if self._closed.is_set():
            raise EventBusClosedError("Event bus is closed")
        with self.db.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO governor_events (payload, published_at) VALUES (?, ?)",
                (json.dumps(event_to_dict(event)), time.time()),
            )
            event_id = str(cursor.lastrowid)
        logger.debug("Published %s for %s as event %s", event.type, event.issue_id, event_id)
        return event_id

    def _next(self) -> tuple[str, str] | None:
        now = time.time()
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, payload FROM governor_events
                WHERE acked_at IS NULL AND (delivered_at IS NULL OR delivered_at < ?)
                ORDER BY id
                LIMIT 1
                """,
                (now - self.visibility_timeout_seconds,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "UPDATE governor_events SET delivered_at = ? WHERE id = ?", (now, row["id"])
            )
        return str(row["id"]), row["payload"]

    def subscribe(self) -> Iterator[tuple[str, GovernorEvent]]:
        """Yield events in publish order until the bus is closed."""
        while not self._closed.is_set():
            item = self._next()
            if item is None:
                self._closed.wait(self.poll_interval_seconds)
                continue

            event_id, payload = item
            try:
                event = event_from_dict(json.loads(payload))
            except (ValueError, MalformedEventError) as e:
                logger.error("Dropping malformed event %s: %s", event_id, e)
                self.ack(event_id)
                continue
            yield event_id, event

    def ack(self, event_id: str) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE governor_events SET acked_at = ? WHERE id = ?", (time.time(), int(event_id))
            )

    def close(self) -> None:
        self._closed.set()

    def reopen(self) -> None:
        self._closed.clear()

    def pending_count(self) -> int:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM governor_events WHERE acked_at IS NULL"
            ).fetchone()
        return row["n"]

    def purge_acked(self, older_than_seconds: float = 24 * 60 * 60) -> int:
        """Delete acked events older than the cutoff. Returns rows deleted."""
        cutoff = time.time() - older_than_seconds
        with self.db.connection() as conn:
            return conn.execute(
                "DELETE FROM governor_events WHERE acked_at IS NOT NULL AND acked_at < ?",
                (cutoff,),
            ).rowcount


class SqliteEventDeduplicator:
    """Deduplicator shared by every governor using the same store."""

    def __init__(
        self,
        db: Database,
        window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.window_seconds = window_seconds
        self.clock = clock

    def seen(self, key: str, window_seconds: float | None = None) -> bool:
        window = self.window_seconds if window_seconds is None else window_seconds
        now = self.clock()
        with self.db.transaction() as conn:
            row = conn.execute("SELECT seen_at FROM event_dedup WHERE key = ?", (key,)).fetchone()
            if row and now - row["seen_at"] < window:
                return True
            conn.execute(
                "INSERT OR REPLACE INTO event_dedup (key, seen_at) VALUES (?, ?)", (key, now)
            )
            conn.execute("DELETE FROM event_dedup WHERE seen_at < ?", (now - max(window, 60),))
        return False

    def clear(self) -> None:
        with self.db.connection() as conn:
            conn.execute("DELETE FROM event_dedup")
