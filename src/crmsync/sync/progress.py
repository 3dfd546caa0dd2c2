"""
Live progress for running syncs.

ProgressTracker is an in-process registry of the latest ProgressSnapshot per
run id, plus synchronous push callbacks for subscribers (the SSE endpoint).
It is the only state shared between concurrent runs, so every access goes
through one lock; each run id has exactly one entry and the last write wins.

When no in-memory snapshot exists (another process ran the sync, or this
process restarted) snapshot_from_run() rebuilds one from the persisted
SyncRun counters.
"""
import logging
import math
import threading
import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from crmsync.config import get_settings
from crmsync.models.sync import RunStatus, SyncRun

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL = {COMPLETED, FAILED, CANCELLED}

# SSE event name per snapshot status
EVENT_TYPES = {
    PROCESSING: "progress",
    COMPLETED: "complete",
    FAILED: "error",
    CANCELLED: "cancelled",
}


class ProgressSnapshot(BaseModel):
    sync_id: str
    total_contacts: int = 0
    processed_contacts: int = 0
    current_contact: str = ""
    percentage: int = 0
    status: str = PROCESSING
    errors: List[str] = Field(default_factory=list)
    batch_number: int = 0
    total_batches: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def event_type(self) -> str:
        return EVENT_TYPES.get(self.status, "progress")


def calculate_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(processed / total * 100)


_STATUS_MAP = {
    RunStatus.PENDING.value: PROCESSING,
    RunStatus.SUCCESS.value: COMPLETED,
    RunStatus.FAILED.value: FAILED,
}


def snapshot_from_run(run: SyncRun) -> ProgressSnapshot:
    """Rebuild a snapshot from the persisted run counters."""
    total = run.total_contacts
    if total <= 0 and run.is_terminal:
        total = run.contacts_processed
    batch_size = max(run.batch_size or 1, 1)
    return ProgressSnapshot(
        sync_id=run.id,
        total_contacts=total,
        processed_contacts=run.contacts_processed,
        percentage=calculate_percentage(run.contacts_processed, total),
        status=_STATUS_MAP.get(run.status, PROCESSING),
        errors=[run.error] if run.error else [],
        batch_number=math.ceil(run.contacts_processed / batch_size),
        total_batches=math.ceil(total / batch_size),
    )


Callback = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """
    Args:
        retention_seconds: How long a terminal snapshot stays in memory after
            its last update. Afterwards readers fall back to the persisted run.
        clock: Monotonic time source. Injected in tests.
    """

    def __init__(
        self,
        retention_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ProgressSnapshot] = {}
        self._finished_at: Dict[str, float] = {}
        self._subscribers: Dict[str, List[Callback]] = {}
        self._retention_seconds = retention_seconds
        self._clock = clock

    def update(self, run_id: str, snapshot: ProgressSnapshot) -> None:
        """Store the snapshot and push it to every subscriber of ``run_id``."""
        with self._lock:
            self._prune()
            self._snapshots[run_id] = snapshot
            if snapshot.is_terminal:
                self._finished_at[run_id] = self._clock()
            else:
                self._finished_at.pop(run_id, None)
            callbacks = list(self._subscribers.get(run_id, ()))

        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Progress subscriber for run %s failed", run_id)

    def get(self, run_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            self._prune()
            return self._snapshots.get(run_id)

    def subscribe(self, run_id: str, callback: Callback) -> Callable[[], None]:
        """Register ``callback`` for ``run_id``. Returns an idempotent unsubscribe."""
        with self._lock:
            self._subscribers.setdefault(run_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(run_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._subscribers[run_id]

        return unsubscribe

    def discard(self, run_id: str) -> None:
        """Drop a run's snapshot. Subscribers are left in place."""
        with self._lock:
            self._snapshots.pop(run_id, None)
            self._finished_at.pop(run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, ()))

    def snapshot_count(self) -> int:
        with self._lock:
            self._prune()
            return len(self._snapshots)

    def _prune(self) -> None:
        # Caller holds the lock.
        cutoff = self._clock() - self._retention_seconds
        expired = [rid for rid, at in self._finished_at.items() if at <= cutoff]
        for run_id in expired:
            del self._finished_at[run_id]
            self._snapshots.pop(run_id, None)


_tracker: Optional[ProgressTracker] = None


def get_tracker() -> ProgressTracker:
    """Process-wide tracker shared by the orchestrator and the API."""
    global _tracker
    if _tracker is None:
        _tracker = ProgressTracker(
            retention_seconds=get_settings().progress_retention_seconds
        )
    return _tracker
