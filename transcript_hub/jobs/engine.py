"""Job engine: validates submissions, owns the stores and clients, and runs each active job on its own scheduler thread."""
import logging
import threading
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from transcript_hub.cache.chunked_store import ChunkedCacheStore
from transcript_hub.cache.keys import parse_cache_key
from transcript_hub.clients.transcripts import TranscriptClient, validate_ticker
from transcript_hub.core.config import settings
from transcript_hub.core.errors import PersistenceError, ValidationError
from transcript_hub.jobs.models import (
    Job,
    JobEvent,
    JobOptions,
    JobStatus,
    JobTargets,
    JobType,
    QuarterRef,
)
from transcript_hub.jobs.progress import ProgressBus, ProgressReporter
from transcript_hub.jobs.quarters import format_quarter, is_valid_quarter
from transcript_hub.jobs.resolver import normalize_tickers, parse_ticker_file
from transcript_hub.jobs.scheduler import JobScheduler
from transcript_hub.jobs.store import JobStore
from transcript_hub.jobs.worker import FetchItemRunner, SummaryItemRunner
from transcript_hub.summaries.store import SummaryStore
from transcript_hub.summaries.summarizer import SummaryClient

logger = logging.getLogger(__name__)


class JobEngine:
    """Entry point for submitting and controlling bulk jobs.
    Why available: The API layer talks only to this object; tests build one with fake clients and temp directories."""

    def __init__(
        self,
        store: JobStore,
        cache: ChunkedCacheStore,
        summary_store: SummaryStore,
        transcript_client: Any,
        summary_client: Any = None,
        bus: Optional[ProgressBus] = None,
        reporter: Optional[ProgressReporter] = None,
        width: Optional[int] = None,
        retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        tick_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.cache = cache
        self.summary_store = summary_store
        self.bus = bus or ProgressBus()
        self.reporter = reporter or ProgressReporter()
        self._today = today
        fetch_runner = FetchItemRunner(
            transcript_client, cache, summary_store, retries=retries, backoff_seconds=backoff_seconds, sleep=sleep, today=today
        )
        summary_runner = None
        if summary_client is not None:
            summary_runner = SummaryItemRunner(
                summary_client, cache, summary_store, retries=retries, backoff_seconds=backoff_seconds, sleep=sleep
            )
        self.scheduler = JobScheduler(store, fetch_runner, summary_runner, bus=self.bus, width=width, tick_seconds=tick_seconds)
        self._lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}

    @classmethod
    def from_settings(cls) -> "JobEngine":
        """Build an engine with file-backed stores under DATA_DIR and the real remote clients."""
        return cls(
            store=JobStore(settings.jobs_dir),
            cache=ChunkedCacheStore(settings.cache_dir, settings.cache_chunk_size, settings.cache_resident_chunks),
            summary_store=SummaryStore(settings.database_path),
            transcript_client=TranscriptClient(),
            summary_client=SummaryClient(),
        )

    # -------------------------
    # Submission
    # -------------------------

    def submit_fetch(
        self,
        tickers: Sequence[str],
        quarters: Optional[Sequence[Dict[str, int]]] = None,
        quarter_count: Optional[int] = None,
        force_refresh: bool = False,
    ) -> Job:
        """Create and start a bulk fetch job. Explicit quarters apply to every ticker; otherwise the last quarter_count quarters are searched per ticker."""
        normalized = normalize_tickers(list(tickers or []))
        if not normalized:
            raise ValidationError("At least one ticker is required")
        if len(normalized) > settings.max_tickers_per_job:
            raise ValidationError(f"Too many tickers: {len(normalized)}. Maximum allowed is {settings.max_tickers_per_job}.")
        for t in normalized:
            validate_ticker(t)

        quarter_refs: Optional[List[QuarterRef]] = None
        if quarters:
            quarter_refs = []
            for q in quarters:
                year, quarter = int(q["year"]), int(q["quarter"])
                if not is_valid_quarter(year, quarter, self._today()):
                    raise ValidationError(f"Invalid quarter: {format_quarter(year, quarter)}")
                quarter_refs.append(QuarterRef(year, quarter))
            per_ticker = len(quarter_refs)
            quarter_count = None
        else:
            quarter_count = quarter_count or settings.default_quarter_count
            if not 1 <= quarter_count <= settings.max_quarter_count:
                raise ValidationError(f"quarterCount must be between 1 and {settings.max_quarter_count}")
            per_ticker = quarter_count

        if len(normalized) * per_ticker > settings.max_total_tasks:
            raise ValidationError(
                f"Too many tasks: {len(normalized) * per_ticker}. Maximum allowed is {settings.max_total_tasks}."
            )

        targets = JobTargets(tickers=normalized, quarters=quarter_refs, quarter_count=quarter_count)
        total = len(normalized) * len(quarter_refs) if quarter_refs else len(normalized)
        job = self.store.create(JobType.BULK_FETCH, targets, JobOptions(force_refresh=force_refresh), total)
        self._launch(job.id)
        return job

    def submit_upload(self, file_content: str, quarter_count: Optional[int] = None, force_refresh: bool = False) -> Job:
        tickers = parse_ticker_file(file_content)
        if not tickers:
            raise ValidationError("No valid tickers found in file")
        logger.info("ticker_file_parsed", extra={"tickers": len(tickers)})
        return self.submit_fetch(tickers, quarter_count=quarter_count, force_refresh=force_refresh)

    def submit_summary(
        self,
        tickers: Optional[Sequence[str]] = None,
        transcript_keys: Optional[Sequence[str]] = None,
        process_all: bool = False,
        force_refresh: bool = False,
        analyst_types: Optional[Sequence[str]] = None,
    ) -> Job:
        """Create and start an AI summary job. The transcript keys to summarize are frozen now so a resumed job works on the same list."""
        if self.scheduler.summary_runner is None:
            raise ValidationError("Summary generation is not configured")
        if transcript_keys:
            keys: List[str] = []
            for raw in transcript_keys:
                try:
                    ticker, year, quarter = parse_cache_key((raw or "").strip().upper())
                except ValueError as e:
                    raise ValidationError(str(e)) from e
                key = f"{ticker}-{year}-Q{quarter}"
                if key not in keys:
                    keys.append(key)
            self._sync_transcript_rows(keys=keys)
        elif process_all or tickers:
            ticker_filter = None if process_all else normalize_tickers(list(tickers or []))
            self._sync_transcript_rows(tickers=ticker_filter)
            keys = self.summary_store.list_unsummarized(ticker_filter, include_summarized=force_refresh)
        else:
            raise ValidationError("Provide tickers, transcriptKeys or processAll")

        if len(keys) > settings.max_total_tasks:
            raise ValidationError(f"Too many transcripts: {len(keys)}. Maximum allowed is {settings.max_total_tasks}.")

        analysts = [a for a in (analyst_types or settings.summary_analyst_types) if a]
        targets = JobTargets(
            tickers=sorted({parse_cache_key(k)[0] for k in keys}),
            transcript_keys=keys,
        )
        options = JobOptions(force_refresh=force_refresh, analyst_types=analysts)
        job = self.store.create(JobType.BULK_SUMMARY, targets, options, len(keys))
        self._launch(job.id)
        return job

    def _sync_transcript_rows(self, keys: Optional[List[str]] = None, tickers: Optional[List[str]] = None) -> None:
        try:
            self.summary_store.sync_from_cache(self.cache, keys=keys, tickers=tickers)
        except PersistenceError:
            logger.warning("transcript_row_sync_failed", exc_info=True)

    # -------------------------
    # Control
    # -------------------------

    def pause(self, job_id: str) -> Job:
        """Ask a running job to stop dispatching; it becomes paused once in-flight items drain."""
        return self.store.request_signal(job_id, JobEvent.PAUSE)

    def resume(self, job_id: str) -> Job:
        """Restart a paused job on a new scheduler thread. While a requested pause is still draining the job is
        running, not paused, so resume raises InvalidTransition until the drain finishes."""
        job = self.store.transition(job_id, JobEvent.RESUME)
        self._launch(job_id)
        return job

    def cancel(self, job_id: str) -> Job:
        """Cancel a running job cooperatively, or a paused job immediately."""
        job = self.store.get(job_id)
        if job.status == JobStatus.RUNNING:
            return self.store.request_signal(job_id, JobEvent.CANCEL)
        cancelled = self.store.transition(job_id, JobEvent.CANCEL)
        self.bus.publish(cancelled)
        return cancelled

    # -------------------------
    # Queries
    # -------------------------

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list_jobs(self, status: Optional[str] = None, job_type: Optional[str] = None) -> List[Job]:
        return self.store.list(status=status, job_type=job_type)

    def progress(self, job_id: str) -> Dict[str, Any]:
        return self.reporter.report(self.store.get(job_id))

    def clear_finished(self) -> int:
        return self.store.clear_terminal()

    def delete_job(self, job_id: str) -> None:
        self.store.delete(job_id)

    # -------------------------
    # Threads
    # -------------------------

    def recover(self) -> List[str]:
        """Restart jobs left pending or running by a previous process. Paused jobs wait for an explicit resume."""
        ids = [j.id for j in self.store.list() if j.status in (JobStatus.PENDING, JobStatus.RUNNING)]
        for job_id in ids:
            logger.info("job_recovering", extra={"job_id": job_id})
            self._launch(job_id)
        return ids

    def _launch(self, job_id: str) -> None:
        with self._lock:
            previous = self._threads.get(job_id)
            if previous is not None and previous.is_alive():
                # A paused run may still be returning from its final transition.
                previous.join()
            t = threading.Thread(target=self._run_job, args=(job_id,), name=f"job-{job_id[:8]}", daemon=True)
            self._threads[job_id] = t
            t.start()

    def _run_job(self, job_id: str) -> None:
        try:
            self.scheduler.run(job_id)
        except Exception:
            logger.exception("job_thread_crashed", extra={"job_id": job_id})

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job's current scheduler thread exits, then return the committed record."""
        with self._lock:
            t = self._threads.get(job_id)
        if t is not None:
            t.join(timeout)
        return self.store.get(job_id)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Join scheduler threads briefly. Jobs still running stay `running` on disk and are picked up by recover()."""
        with self._lock:
            threads = list(self._threads.values())
        deadline = time.monotonic() + timeout
        for t in threads:
            t.join(max(0.0, deadline - time.monotonic()))
