"""Drives one job through its work items with a bounded thread pool, honouring pause and cancel requests between dispatches."""
import copy
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import List, Optional, Set

from transcript_hub.core.config import settings
from transcript_hub.core.errors import InvalidTransition, PersistenceError
from transcript_hub.jobs.models import Job, JobEvent, JobStatus, JobType, Progress
from transcript_hub.jobs.progress import ProgressBus
from transcript_hub.jobs.resolver import resolver_for
from transcript_hub.jobs.store import JobStore
from transcript_hub.jobs.worker import FetchItemRunner, ItemOutcome, SummaryItemRunner

logger = logging.getLogger(__name__)


class JobScheduler:
    """Runs a job from pending/running to completed, failed, cancelled or paused.

    Remaining work is always derived from the persisted progress lists, so a job resumed after
    a pause and a job recovered after a process restart continue the same way. Outcomes are folded
    into progress on the scheduler thread only, and each one is persisted before the next is applied.
    """

    def __init__(
        self,
        store: JobStore,
        fetch_runner: FetchItemRunner,
        summary_runner: Optional[SummaryItemRunner] = None,
        bus: Optional[ProgressBus] = None,
        width: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        default_quarter_count: Optional[int] = None,
    ):
        self.store = store
        self.fetch_runner = fetch_runner
        self.summary_runner = summary_runner
        self.bus = bus
        self.width = width or settings.worker_pool_width
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.scheduler_tick_seconds
        self.default_quarter_count = default_quarter_count or settings.default_quarter_count

    def _runner_for(self, job: Job):
        if job.job_type == JobType.BULK_SUMMARY:
            if self.summary_runner is None:
                raise RuntimeError("No summary runner configured")
            return self.summary_runner
        return self.fetch_runner

    def _publish(self, job: Job) -> None:
        if self.bus is not None:
            self.bus.publish(job)

    def run(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job.status == JobStatus.PENDING:
            job = self.store.transition(job_id, JobEvent.START)
            self._publish(job)
        if job.status != JobStatus.RUNNING:
            logger.info("job_not_runnable", extra={"job_id": job_id, "status": job.status})
            return job

        try:
            return self._drive(job)
        except Exception as e:
            logger.exception("job_scheduler_crashed", extra={"job_id": job_id})
            return self._fail(job_id, f"scheduler error: {e}")

    def _drive(self, job: Job) -> Job:
        job_id = job.id
        runner = self._runner_for(job)
        resolver = resolver_for(job)
        quarter_count = job.targets.quarter_count or self.default_quarter_count
        job = self.store.begin_run(job_id)
        progress = copy.deepcopy(job.progress)
        settled = progress.done_keys()
        fatal: List[BaseException] = []
        signal: Optional[str] = None

        logger.info(
            "job_run_started",
            extra={"job_id": job_id, "job_type": job.job_type, "total": progress.total, "already_settled": len(settled)},
        )

        in_flight: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.width, thread_name_prefix=f"job-{job_id[:8]}") as pool:
            for item in resolver.items():
                if item.key in settled:
                    continue
                self._settle_until(job_id, progress, in_flight, self.width, fatal)
                if fatal:
                    break
                signal = self.store.pending_signal(job_id)
                if signal:
                    logger.info("job_signal_observed", extra={"job_id": job_id, "signal": signal, "in_flight": len(in_flight)})
                    break
                progress.current_ticker = item.label
                in_flight.add(pool.submit(runner.run, item, job.options, quarter_count))
            # Drain: in-flight outcomes are still recorded after pause or cancel.
            self._settle_until(job_id, progress, in_flight, 1, fatal)

        # A cancel accepted while a pause was draining replaces the stored pause signal.
        signal = self.store.pending_signal(job_id) or signal

        if fatal:
            return self._fail(job_id, str(fatal[0]))
        if signal == JobEvent.CANCEL:
            final = self.store.transition(job_id, JobEvent.CANCEL)
        elif signal == JobEvent.PAUSE and progress.current < progress.total:
            final = self.store.transition(job_id, JobEvent.PAUSE)
        else:
            # A pause that lands after the last item settled has nothing left to hold back.
            final = self.store.transition(job_id, JobEvent.COMPLETE)
        self._publish(final)
        logger.info(
            "job_run_finished",
            extra={
                "job_id": job_id,
                "status": final.status,
                "processed": len(final.progress.processed),
                "failed": len(final.progress.failed),
                "skipped": len(final.progress.skipped),
            },
        )
        return final

    def _settle_until(self, job_id: str, progress: Progress, in_flight: Set[Future], limit: int, fatal: List[BaseException]) -> None:
        """Fold finished outcomes into progress, blocking while at least `limit` items are in flight."""
        for f in [f for f in in_flight if f.done()]:
            in_flight.discard(f)
            self._settle(job_id, progress, f, fatal)
        while len(in_flight) >= limit:
            done, _ = wait(in_flight, timeout=self.tick_seconds, return_when=FIRST_COMPLETED)
            for f in done:
                in_flight.discard(f)
                self._settle(job_id, progress, f, fatal)

    def _settle(self, job_id: str, progress: Progress, future: Future, fatal: List[BaseException]) -> None:
        try:
            outcome: ItemOutcome = future.result()
        except PersistenceError as e:
            logger.error("item_persistence_failed", extra={"job_id": job_id, "error": str(e)})
            fatal.append(e)
            return
        if fatal:
            # The job is already failing; later outcomes are not committed.
            return
        progress.record(outcome.item.key, outcome.status, outcome.reason)
        try:
            snapshot = self.store.update_progress(job_id, progress, outcome.to_result())
        except PersistenceError as e:
            logger.error("progress_snapshot_failed", extra={"job_id": job_id, "error": str(e)})
            fatal.append(e)
            return
        logger.debug(
            "item_settled",
            extra={"job_id": job_id, "item": outcome.item.key, "status": outcome.status, "current": progress.current},
        )
        self._publish(snapshot)

    def _fail(self, job_id: str, error: str) -> Job:
        try:
            failed = self.store.transition(job_id, JobEvent.FAIL, error=error)
        except (PersistenceError, InvalidTransition):
            logger.exception("job_fail_transition_failed", extra={"job_id": job_id})
            return self.store.get(job_id)
        self._publish(failed)
        return failed
