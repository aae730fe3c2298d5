"""
Live progress reporting for long-running jobs.

A ``ProgressTracker`` is written to by one job (from any number of worker
threads) and read three ways: ``snapshot()`` for polling, ``subscribe()``
queues for Server-Sent Events, and ``lines_since()`` for plain-text logs.
"""

import queue
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple


TERMINAL_STATUSES = frozenset({"completed", "cancelled", "failed"})

_COUNTERS = (
    "total", "completed", "succeeded", "failed", "skipped", "in_flight",
    "logos_uploaded", "photos_uploaded", "base64_uploads", "url_uploads",
)


class ProgressTracker:
    """Thread-safe progress state with fan-out to subscriber queues."""

    def __init__(self, max_errors: int = 100, max_log_lines: int = 1000,
                 queue_size: int = 256):
        self.max_errors = max_errors
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Set[queue.Queue] = set()
        self._log: Deque[Tuple[int, str]] = deque(maxlen=max_log_lines)
        self._log_seq = 0
        self._reset_state()

    def _reset_state(self) -> None:
        self._state: Dict[str, Any] = {c: 0 for c in _COUNTERS}
        self._state.update({
            "status": "idle",
            "message": "",
            "current": None,
            "started_at": None,
            "finished_at": None,
        })
        self._details: Dict[str, Any] = {}
        self._skip_reasons: Dict[str, int] = {}
        self._errors: Deque[Dict[str, Any]] = deque(maxlen=self.max_errors)
        self._t0: Optional[float] = None
        self._t1: Optional[float] = None

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def start(self, total: int = 0, message: str = "") -> None:
        with self._lock:
            self._reset_state()
            self._state.update({
                "status": "running",
                "total": total,
                "message": message,
                "started_at": time.time(),
            })
            self._t0 = time.monotonic()
            self._publish_locked()

    def update(self, **fields: Any) -> None:
        """Set top-level fields (``total``, ``message``, ``current``) or free-form details."""
        with self._lock:
            for key, value in fields.items():
                if key in ("total", "message", "current"):
                    self._state[key] = value
                else:
                    self._details[key] = value
            self._publish_locked()

    def add_total(self, count: int) -> None:
        with self._lock:
            self._state["total"] += count
            self._publish_locked()

    def item_started(self, label: str = None) -> None:
        with self._lock:
            self._state["in_flight"] += 1
            if label:
                self._state["current"] = label
            self._publish_locked()

    def record_success(self, kind: str = None, source: str = None) -> None:
        """Count a processed item. ``kind`` is logo/photo, ``source`` is url/base64."""
        with self._lock:
            self._finish_item_locked()
            self._state["succeeded"] += 1
            if kind in ("logo", "photo"):
                self._state[f"{kind}s_uploaded"] += 1
            if source in ("url", "base64"):
                self._state[f"{source}_uploads"] += 1
            self._publish_locked()

    def record_error(self, item: str, message: str, counted: bool = True) -> None:
        """Record a failure. ``counted=False`` logs it without touching the counters."""
        with self._lock:
            if counted:
                self._finish_item_locked()
                self._state["failed"] += 1
            self._errors.append({
                "item": item,
                "error": message,
                "at": time.time(),
            })
            self._publish_locked()

    def record_skip(self, reason: str = "already_uploaded") -> None:
        with self._lock:
            self._state["skipped"] += 1
            self._skip_reasons[reason] = self._skip_reasons.get(reason, 0) + 1
            self._publish_locked()

    def log(self, line: str) -> None:
        """Append a plain-text progress line."""
        with self._lock:
            self._log.append((self._log_seq, line))
            self._log_seq += 1
            self._broadcast_locked({"type": "log", "line": line})

    def finish(self, status: str = "completed", message: str = None) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        with self._lock:
            self._state["status"] = status
            self._state["finished_at"] = time.time()
            self._state["in_flight"] = 0
            self._state["current"] = None
            if message is not None:
                self._state["message"] = message
            self._t1 = time.monotonic()
            self._publish_locked()

    def reset(self) -> None:
        with self._lock:
            self._reset_state()
            self._log.clear()
            self._publish_locked()

    def _finish_item_locked(self) -> None:
        self._state["completed"] += 1
        if self._state["in_flight"] > 0:
            self._state["in_flight"] -= 1

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def status(self) -> str:
        with self._lock:
            return self._state["status"]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> Dict[str, Any]:
        snap = dict(self._state)
        elapsed = 0.0
        if self._t0 is not None:
            elapsed = (self._t1 if self._t1 is not None else time.monotonic()) - self._t0
        speed = snap["completed"] / elapsed if elapsed > 0 else 0.0
        remaining = max(snap["total"] - snap["completed"], 0)
        snap["elapsed_seconds"] = round(elapsed, 2)
        snap["items_per_second"] = round(speed, 2)
        snap["eta_seconds"] = round(remaining / speed, 1) if speed > 0 and remaining else None
        snap["percent"] = (
            round(100.0 * snap["completed"] / snap["total"], 1) if snap["total"] else 0.0
        )
        snap["skip_reasons"] = dict(self._skip_reasons)
        snap["errors"] = list(self._errors)
        snap["details"] = dict(self._details)
        return snap

    def lines_since(self, seq: int = 0) -> Tuple[List[str], int]:
        """Log lines with sequence >= ``seq`` and the next sequence to ask for."""
        with self._lock:
            lines = [line for n, line in self._log if n >= seq]
            return lines, self._log_seq

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self) -> queue.Queue:
        """Register a listener; the current snapshot is queued immediately."""
        q: queue.Queue = queue.Queue(maxsize=self.queue_size)
        with self._lock:
            q.put_nowait({"type": "progress", **self._snapshot_locked()})
            self._subscribers.add(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _publish_locked(self) -> None:
        if self._subscribers:
            self._broadcast_locked({"type": "progress", **self._snapshot_locked()})

    def _broadcast_locked(self, event: Dict[str, Any]) -> None:
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                # Slow consumer: drop this event, the next snapshot supersedes it.
                pass
