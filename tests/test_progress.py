from datetime import datetime, timedelta, timezone

from transcript_hub.jobs.models import Job, JobOptions, JobTargets, Progress
from transcript_hub.jobs.progress import ProgressBus, ProgressReporter, estimate_remaining_seconds

STARTED = datetime(2024, 8, 15, 12, 0, 0, tzinfo=timezone.utc)


def _job(status="running", current=0, total=10):
    progress = Progress(total=total)
    for i in range(current):
        progress.record(f"T{i}", "success")
    return Job(
        id="job1",
        job_type="bulk_fetch",
        status=status,
        targets=JobTargets(tickers=[f"T{i}" for i in range(total)], quarter_count=4),
        options=JobOptions(),
        progress=progress,
        started_at=STARTED.isoformat(),
    )


def test_eta_is_average_time_per_item_times_remaining():
    job = _job(current=4, total=10)
    now = STARTED + timedelta(seconds=20)
    assert estimate_remaining_seconds(job, now) == 30


def test_eta_absent_before_first_item_or_when_not_running():
    now = STARTED + timedelta(seconds=20)
    assert estimate_remaining_seconds(_job(current=0), now) is None
    assert estimate_remaining_seconds(_job(status="paused", current=3), now) is None


def test_eta_counts_only_the_current_run():
    job = _job(current=4, total=10)
    # Paused for an hour after the first two items, then resumed.
    resumed = STARTED + timedelta(hours=1)
    job.run_started_at = resumed.isoformat()
    job.run_start_current = 2
    now = resumed + timedelta(seconds=20)

    assert estimate_remaining_seconds(job, now) == 60
    job.run_start_current = 4
    assert estimate_remaining_seconds(job, now) is None


def test_report_shape():
    reporter = ProgressReporter(clock=lambda: STARTED + timedelta(seconds=10))
    job = _job(current=2, total=4)
    job.progress.current_ticker = "T1"

    payload = reporter.report(job)

    assert payload["jobId"] == "job1"
    assert payload["status"] == "running"
    assert payload["progress"]["current"] == 2
    assert payload["progress"]["total"] == 4
    assert payload["progress"]["currentTicker"] == "T1"
    assert payload["progress"]["processed"] == ["T0", "T1"]
    assert payload["estimatedTimeRemaining"] == 10
    assert payload["lastUpdate"]


def test_bus_fans_out_and_drops_oldest_when_full():
    bus = ProgressBus(maxsize=2)
    a = bus.subscribe()
    b = bus.subscribe()
    for i in range(3):
        bus.publish(_job(current=i))

    assert [a.get_nowait().progress.current for _ in range(2)] == [1, 2]
    assert b.qsize() == 2

    bus.unsubscribe(a)
    bus.publish(_job(current=3))
    assert a.empty()
