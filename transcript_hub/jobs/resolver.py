"""Expands a job's targets into the ordered sequence of work items the scheduler dispatches."""
from dataclasses import dataclass
from typing import Iterator, List, Optional

from transcript_hub.cache.keys import cache_key, normalize_ticker, parse_cache_key
from transcript_hub.jobs.models import Job, JobType


@dataclass(frozen=True)
class WorkItem:
    """One unit of work. Without year/quarter the fetch worker resolves the quarter lazily via QuarterSearch."""

    ticker: str
    year: Optional[int] = None
    quarter: Optional[int] = None

    @property
    def explicit(self) -> bool:
        return self.year is not None and self.quarter is not None

    @property
    def key(self) -> str:
        """Identity of the item in progress lists: the ticker for lazy items, the cache key otherwise."""
        if self.explicit:
            return cache_key(self.ticker, self.year, self.quarter)
        return self.ticker

    @property
    def label(self) -> str:
        return self.ticker


def normalize_tickers(tickers: List[str]) -> List[str]:
    """Strip, upper-case and de-duplicate tickers, keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for raw in tickers:
        t = normalize_ticker(raw)
        if t and t not in seen:
            seen.add(t)
            out.append(t)
    return out


def parse_ticker_file(content: str, max_len: int = 10) -> List[str]:
    """Tickers from an uploaded list: first whitespace-separated token per line ("AAPL", "AAPL\\tApple Inc"), blank and # lines ignored, de-duplicated."""
    tickers: List[str] = []
    for line in (content or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        token = line.split()[0].strip(",;").upper()
        if 0 < len(token) <= max_len:
            tickers.append(token)
    return normalize_tickers(tickers)


class TickerResolver:
    """Fetch-job item source: tickers x explicit quarters in input order, or one lazy item per ticker."""

    def __init__(self, job: Job):
        self.tickers = normalize_tickers(job.targets.tickers)
        self.quarters = job.targets.quarters

    def total(self) -> int:
        if self.quarters:
            return len(self.tickers) * len(self.quarters)
        return len(self.tickers)

    def items(self) -> Iterator[WorkItem]:
        for ticker in self.tickers:
            if self.quarters:
                for q in self.quarters:
                    yield WorkItem(ticker, q.year, q.quarter)
            else:
                yield WorkItem(ticker)


class UnsummarizedResolver:
    """Summary-job item source: replays the transcript keys frozen into the job at submission."""

    def __init__(self, job: Job):
        self.keys = list(job.targets.transcript_keys or [])

    def total(self) -> int:
        return len(self.keys)

    def items(self) -> Iterator[WorkItem]:
        for key in self.keys:
            ticker, year, quarter = parse_cache_key(key)
            yield WorkItem(ticker, year, quarter)


def resolver_for(job: Job):
    if job.job_type == JobType.BULK_SUMMARY:
        return UnsummarizedResolver(job)
    return TickerResolver(job)
