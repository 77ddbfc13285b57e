import sys
import threading
import time
from datetime import date
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Ensure repo root is on sys.path so `import transcript_hub...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from transcript_hub.cache.chunked_store import ChunkedCacheStore
from transcript_hub.cache.keys import cache_key
from transcript_hub.core.errors import NotAvailable
from transcript_hub.jobs.engine import JobEngine
from transcript_hub.jobs.store import JobStore
from transcript_hub.summaries.store import SummaryStore

# Fixed "today" for every engine built in tests: Q3 2024, so lookback candidates are
# 2024-Q3, 2024-Q2, 2024-Q1, 2023-Q4, ...
TODAY = date(2024, 8, 15)


def payload_for(ticker: str, year: int, quarter: int) -> dict:
    return {
        "ticker": ticker,
        "year": year,
        "quarter": quarter,
        "date": f"{year}-{quarter * 3:02d}-20",
        "transcript": f"{ticker} Q{quarter} {year} call. Analyst: what about logistics? CEO: We can reuse the fleet.",
    }


class FakeTranscriptClient:
    """In-process stand-in for the transcript API.

    available:   cache keys (AAA-2024-Q3) that return a transcript
    tickers:     tickers that return a transcript for any quarter
    errors:      cache key -> exceptions raised on successive calls before falling back
    on_call:     hook called with (ticker, year, quarter, call_number) before answering
    gate:        threading.Event every call waits on
    """

    def __init__(
        self,
        available=(),
        tickers=(),
        errors: Optional[Dict[str, List[Exception]]] = None,
        on_call: Optional[Callable[[str, int, int, int], None]] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.available = set(available)
        self.tickers = set(tickers)
        self.errors = {k: list(v) for k, v in (errors or {}).items()}
        self.on_call = on_call
        self.gate = gate
        self.calls: List[Tuple[str, int, int]] = []
        self._lock = threading.Lock()

    def fetch(self, ticker: str, year: int, quarter: int) -> dict:
        with self._lock:
            self.calls.append((ticker, year, quarter))
            n = len(self.calls)
            queued = self.errors.get(cache_key(ticker, year, quarter))
            err = queued.pop(0) if queued else None
        if self.on_call is not None:
            self.on_call(ticker, year, quarter, n)
        if self.gate is not None:
            assert self.gate.wait(5), "gate never opened"
        if err is not None:
            raise err
        if ticker in self.tickers or cache_key(ticker, year, quarter) in self.available:
            return payload_for(ticker, year, quarter)
        raise NotAvailable(f"No transcript for {ticker} Q{quarter} {year}")

    def calls_for(self, ticker: str) -> List[Tuple[str, int, int]]:
        return [c for c in self.calls if c[0] == ticker]


class FakeSummaryClient:
    model = "fake-model"

    def __init__(self, errors: Optional[List[Exception]] = None):
        self.errors = list(errors or [])
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def summarize(self, transcript_text: str, context: dict) -> dict:
        with self._lock:
            self.calls.append(dict(context))
            err = self.errors.pop(0) if self.errors else None
        if err is not None:
            raise err
        content = (
            "🎯 THE HIDDEN GOLDMINE\n\nThe Boring Quote: We can reuse the fleet.\n"
            "Why It's Actually Massive: adjacent logistics.\nThe Advantage: existing assets.\nSize Potential: Medium"
        )
        return {
            "analyst_type": context["analyst_type"],
            "content": content,
            "flags": {"has_hidden_goldmine": True, "has_boring_quote": True, "has_size_potential": True},
        }


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def data_dir(tmp_path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def make_engine(data_dir):
    """Factory for engines sharing one data directory, so a second engine simulates a process restart."""
    built: List[JobEngine] = []

    def _make(
        client,
        summary_client=None,
        width: int = 3,
        retries: int = 2,
        capacity: int = 200,
        cache: Optional[ChunkedCacheStore] = None,
    ) -> JobEngine:
        engine = JobEngine(
            store=JobStore(str(data_dir / "jobs")),
            cache=cache or ChunkedCacheStore(str(data_dir / "cache"), capacity=capacity),
            summary_store=SummaryStore(data_dir / "transcripts.db"),
            transcript_client=client,
            summary_client=summary_client,
            width=width,
            retries=retries,
            backoff_seconds=0.0,
            tick_seconds=0.01,
            sleep=lambda s: None,
            today=lambda: TODAY,
        )
        built.append(engine)
        return engine

    yield _make

    for engine in built:
        engine.shutdown(timeout=2.0)
        engine.summary_store.close()
