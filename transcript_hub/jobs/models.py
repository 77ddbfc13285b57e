"""Job records, progress snapshots and the job status state machine."""
import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, RUNNING, PAUSED, COMPLETED, FAILED, CANCELLED)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)


class JobType:
    BULK_FETCH = "bulk_fetch"
    BULK_SUMMARY = "bulk_summary"

    ALL = (BULK_FETCH, BULK_SUMMARY)


class JobEvent:
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    COMPLETE = "complete"
    FAIL = "fail"


# (status, event) -> next status. Anything not listed is illegal.
TRANSITIONS: Dict[tuple, str] = {
    (JobStatus.PENDING, JobEvent.START): JobStatus.RUNNING,
    (JobStatus.RUNNING, JobEvent.PAUSE): JobStatus.PAUSED,
    (JobStatus.PAUSED, JobEvent.RESUME): JobStatus.RUNNING,
    (JobStatus.RUNNING, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.PAUSED, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.RUNNING, JobEvent.COMPLETE): JobStatus.COMPLETED,
    (JobStatus.RUNNING, JobEvent.FAIL): JobStatus.FAILED,
}


def next_status(status: str, event: str) -> Optional[str]:
    return TRANSITIONS.get((status, event))


class ItemStatus:
    SUCCESS = "success"
    SKIPPED = "skipped"
    NOT_AVAILABLE = "not_available"
    FAILED = "failed"


class SkipReason:
    CACHED = "cached"
    ALREADY_SUMMARIZED = "already_summarized"
    NOT_AVAILABLE = "not_available"


@dataclass
class QuarterRef:
    year: int
    quarter: int


@dataclass
class JobTargets:
    """What a job works on: tickers with explicit quarters or a lookback count (fetch), or frozen cache keys (summary)."""

    tickers: List[str] = field(default_factory=list)
    quarters: Optional[List[QuarterRef]] = None
    quarter_count: Optional[int] = None
    transcript_keys: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobTargets":
        quarters = data.get("quarters")
        return cls(
            tickers=list(data.get("tickers") or []),
            quarters=[QuarterRef(int(q["year"]), int(q["quarter"])) for q in quarters] if quarters is not None else None,
            quarter_count=data.get("quarter_count"),
            transcript_keys=list(data["transcript_keys"]) if data.get("transcript_keys") is not None else None,
        )


@dataclass
class JobOptions:
    force_refresh: bool = False
    analyst_types: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        return cls(
            force_refresh=bool(data.get("force_refresh", False)),
            analyst_types=list(data.get("analyst_types") or []),
        )


@dataclass
class Progress:
    """Progress snapshot. processed/failed/skipped hold work item keys; their combined length always equals current."""

    total: int = 0
    current: int = 0
    current_ticker: Optional[str] = None
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_details: List[Dict[str, str]] = field(default_factory=list)
    skipped_details: List[Dict[str, str]] = field(default_factory=list)
    updated_at: Optional[str] = None

    def done_keys(self) -> set:
        return set(self.processed) | set(self.failed) | set(self.skipped)

    def check(self) -> None:
        """Raise ValueError when the counters disagree with the outcome lists."""
        settled = len(self.processed) + len(self.failed) + len(self.skipped)
        if settled != self.current:
            raise ValueError(f"progress mismatch: {settled} settled items but current={self.current}")
        if self.current > self.total:
            raise ValueError(f"progress overflow: current={self.current} > total={self.total}")

    def record(self, key: str, status: str, reason: Optional[str] = None) -> None:
        """Append one item outcome and bump current."""
        if status == ItemStatus.SUCCESS:
            self.processed.append(key)
        elif status == ItemStatus.FAILED:
            self.failed.append(key)
            self.failed_details.append({"item": key, "reason": reason or "unknown error"})
        else:
            self.skipped.append(key)
            self.skipped_details.append({"item": key, "reason": reason or status})
        self.current += 1
        self.updated_at = utc_now()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Progress":
        return cls(
            total=int(data.get("total", 0)),
            current=int(data.get("current", 0)),
            current_ticker=data.get("current_ticker"),
            processed=list(data.get("processed") or []),
            failed=list(data.get("failed") or []),
            skipped=list(data.get("skipped") or []),
            failed_details=list(data.get("failed_details") or []),
            skipped_details=list(data.get("skipped_details") or []),
            updated_at=data.get("updated_at"),
        )


@dataclass
class ItemResult:
    item: str
    status: str
    year: Optional[int] = None
    quarter: Optional[int] = None
    transcript_length: Optional[int] = None
    summaries_generated: Optional[int] = None
    reason: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Job:
    """A durable bulk job: type, targets, options, lifecycle status and the latest progress snapshot.
    Why available: The unit the job store persists and the scheduler drives; the API exposes it for polling."""

    id: str
    job_type: str
    status: str
    targets: JobTargets
    options: JobOptions
    progress: Progress
    results: List[Dict[str, Any]] = field(default_factory=list)
    signal: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    # Start of the current scheduler run (first start, resume or recovery) and items settled before it.
    run_started_at: Optional[str] = None
    run_start_current: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def copy(self) -> "Job":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            job_type=data["job_type"],
            status=data["status"],
            targets=JobTargets.from_dict(data.get("targets") or {}),
            options=JobOptions.from_dict(data.get("options") or {}),
            progress=Progress.from_dict(data.get("progress") or {}),
            results=list(data.get("results") or []),
            signal=data.get("signal"),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            run_started_at=data.get("run_started_at"),
            run_start_current=int(data.get("run_start_current") or 0),
        )
