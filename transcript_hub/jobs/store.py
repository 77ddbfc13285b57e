"""File-backed job store: one JSON document per job, rewritten atomically on every change."""
import copy
import logging
import os
import threading
import uuid
from typing import Any, Dict, List, Optional

from transcript_hub.core.errors import InvalidTransition, JobNotFound, PersistenceError
from transcript_hub.jobs.models import (
    Job,
    JobEvent,
    JobOptions,
    JobStatus,
    JobTargets,
    Progress,
    next_status,
    utc_now,
)
from transcript_hub.utils.fileio import atomic_write_json, read_json

logger = logging.getLogger(__name__)

_SIGNAL_EVENTS = (JobEvent.PAUSE, JobEvent.CANCEL)


class JobStore:
    """Durable registry of jobs keyed by id. Every mutation writes the whole record to <root>/<id>.json before it becomes visible to readers.
    Why available: Lets jobs survive process restarts and gives pollers a consistent snapshot; replaces a process-global dict with an injected instance."""

    def __init__(self, root: str):
        self.root = root
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create job directory {root}: {e}") from e
        self._load()

    def _path(self, job_id: str) -> str:
        return os.path.join(self.root, f"{job_id}.json")

    def _load(self) -> None:
        for name in sorted(os.listdir(self.root)):
            if not name.endswith(".json") or name.startswith("."):
                continue
            path = os.path.join(self.root, name)
            try:
                job = Job.from_dict(read_json(path))
            except (PersistenceError, KeyError, TypeError, ValueError):
                logger.warning("job_record_unreadable", exc_info=True, extra={"path": path})
                continue
            self._jobs[job.id] = job
        logger.info("job_store_loaded", extra={"root": self.root, "jobs": len(self._jobs)})

    def _commit(self, job: Job) -> Job:
        """Persist then publish. Caller holds the lock; on failure the previous record stays visible."""
        job.updated_at = utc_now()
        atomic_write_json(self._path(job.id), job.to_dict())
        self._jobs[job.id] = job
        return job.copy()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    # -------------------------
    # Reads
    # -------------------------

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._require(job_id).copy()

    def list(self, status: Optional[str] = None, job_type: Optional[str] = None) -> List[Job]:
        """Jobs newest first, optionally filtered by status and/or job type."""
        with self._lock:
            jobs = [
                j.copy()
                for j in self._jobs.values()
                if (status is None or j.status == status) and (job_type is None or j.job_type == job_type)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    # -------------------------
    # Writes
    # -------------------------

    def create(self, job_type: str, targets: JobTargets, options: JobOptions, total: int) -> Job:
        job = Job(
            id=uuid.uuid4().hex,
            job_type=job_type,
            status=JobStatus.PENDING,
            targets=targets,
            options=options,
            progress=Progress(total=total, updated_at=utc_now()),
        )
        with self._lock:
            created = self._commit(job)
        logger.info("job_created", extra={"job_id": job.id, "job_type": job_type, "total": total})
        return created

    def transition(self, job_id: str, event: str, error: Optional[str] = None) -> Job:
        """Apply one lifecycle event. Raises InvalidTransition when the event is illegal for the current status."""
        with self._lock:
            current = self._require(job_id)
            target = next_status(current.status, event)
            if target is None:
                raise InvalidTransition(job_id, current.status, event)
            job = current.copy()
            job.status = target
            job.signal = None
            if event == JobEvent.START and job.started_at is None:
                job.started_at = utc_now()
            if target in JobStatus.TERMINAL:
                job.completed_at = utc_now()
            if error is not None:
                job.error = error
            committed = self._commit(job)
        logger.info("job_transition", extra={"job_id": job_id, "event": event, "status": target})
        return committed

    def request_signal(self, job_id: str, event: str) -> Job:
        """Record a cooperative pause/cancel request for a running job; the scheduler applies it after draining in-flight items.
        A pending cancel is never downgraded to pause."""
        if event not in _SIGNAL_EVENTS:
            raise ValueError(f"Unsupported signal: {event}")
        with self._lock:
            current = self._require(job_id)
            if current.status != JobStatus.RUNNING or next_status(current.status, event) is None:
                raise InvalidTransition(job_id, current.status, event)
            if current.signal == JobEvent.CANCEL and event == JobEvent.PAUSE:
                raise InvalidTransition(job_id, "cancelling", event)
            if current.signal == event:
                return current.copy()
            job = current.copy()
            job.signal = event
            committed = self._commit(job)
        logger.info("job_signal_requested", extra={"job_id": job_id, "signal": event})
        return committed

    def begin_run(self, job_id: str) -> Job:
        """Stamp the start of a scheduler run on a running job so the ETA ignores time spent paused or down."""
        with self._lock:
            current = self._require(job_id)
            if current.status != JobStatus.RUNNING:
                raise InvalidTransition(job_id, current.status, "run")
            job = current.copy()
            job.run_started_at = utc_now()
            job.run_start_current = job.progress.current
            return self._commit(job)

    def pending_signal(self, job_id: str) -> Optional[str]:
        with self._lock:
            return self._require(job_id).signal

    def update_progress(self, job_id: str, progress: Progress, result: Optional[Dict[str, Any]] = None) -> Job:
        """Persist a new progress snapshot (and optionally append one item result). Terminal jobs are immutable."""
        progress.check()
        with self._lock:
            current = self._require(job_id)
            if current.is_terminal:
                raise InvalidTransition(job_id, current.status, "update")
            job = current.copy()
            job.progress = copy.deepcopy(progress)
            if result is not None:
                job.results.append(dict(result))
            return self._commit(job)

    def delete(self, job_id: str) -> None:
        with self._lock:
            job = self._require(job_id)
            if not job.is_terminal:
                raise InvalidTransition(job_id, job.status, "delete")
            self._remove(job_id)

    def clear_terminal(self) -> int:
        """Remove every completed, failed or cancelled job. Returns how many were removed."""
        with self._lock:
            ids = [j.id for j in self._jobs.values() if j.is_terminal]
            for job_id in ids:
                self._remove(job_id)
        logger.info("jobs_cleared", extra={"count": len(ids)})
        return len(ids)

    def _remove(self, job_id: str) -> None:
        try:
            if os.path.exists(self._path(job_id)):
                os.remove(self._path(job_id))
        except OSError as e:
            raise PersistenceError(f"Failed to delete job {job_id}: {e}") from e
        self._jobs.pop(job_id, None)
