"""Progress formatting for pollers and an in-process push channel for committed snapshots."""
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from transcript_hub.jobs.models import Job, JobStatus

logger = logging.getLogger(__name__)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def estimate_remaining_seconds(job: Job, now: Optional[datetime] = None) -> Optional[int]:
    """Average time per item settled in the current run times the items left.
    Only the current run counts, so time spent paused or between a crash and recovery does not inflate the estimate.
    None until the job is running and has settled at least one item in this run."""
    p = job.progress
    if job.run_started_at:
        started, baseline = _parse_ts(job.run_started_at), job.run_start_current
    else:
        started, baseline = _parse_ts(job.started_at), 0
    settled = p.current - baseline
    if job.status != JobStatus.RUNNING or started is None or settled <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = max(0.0, (now - started).total_seconds())
    per_item = elapsed / settled
    return int(round(per_item * max(0, p.total - p.current)))


class ProgressReporter:
    """Formats a job's committed progress snapshot as the polling payload.
    Why available: Shared by GET /jobs/{id}/progress and the push channel so both show the same shape."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock

    def report(self, job: Job) -> Dict[str, Any]:
        p = job.progress
        payload: Dict[str, Any] = {
            "jobId": job.id,
            "jobType": job.job_type,
            "status": job.status,
            "progress": {
                "current": p.current,
                "total": p.total,
                "currentTicker": p.current_ticker,
                "processed": list(p.processed),
                "failed": list(p.failed),
                "skipped": list(p.skipped),
                "failedDetails": list(p.failed_details),
                "skippedDetails": list(p.skipped_details),
            },
            "lastUpdate": p.updated_at or job.updated_at,
        }
        eta = estimate_remaining_seconds(job, self._clock())
        if eta is not None:
            payload["estimatedTimeRemaining"] = eta
        if job.error:
            payload["error"] = job.error
        return payload


class ProgressBus:
    """Fan-out of committed job snapshots to in-process subscribers, one queue per subscriber.
    A full subscriber queue drops its oldest snapshot rather than blocking the scheduler."""

    def __init__(self, maxsize: int = 100):
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []
        self._maxsize = maxsize

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def publish(self, job: Job) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            while True:
                try:
                    q.put_nowait(job)
                    break
                except queue.Full:
                    logger.debug("progress_snapshot_dropped", extra={"job_id": job.id})
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass
