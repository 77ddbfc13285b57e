"""HTTP client for the API Ninjas earnings-call transcript endpoint."""
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

from transcript_hub.core.config import settings
from transcript_hub.core.errors import NotAvailable, RemoteError, TransientRemoteError, ValidationError
from transcript_hub.jobs.quarters import format_quarter, is_valid_quarter

logger = logging.getLogger(__name__)

_TICKER_RE = re.compile(r"^[A-Z0-9.\-]{1,10}$")


def validate_ticker(ticker: str) -> str:
    t = (ticker or "").strip().upper()
    if not _TICKER_RE.match(t):
        raise ValidationError(f"Invalid ticker: {ticker!r}")
    return t


class TranscriptClient:
    """Fetch one transcript per (ticker, year, quarter) with a request timeout and a minimum interval between calls.
    Raises NotAvailable (404 / empty body), TransientRemoteError (429, 5xx, timeout, connection), ValidationError (400 or bad input), RemoteError (anything else).
    Why available: The fetch worker's only collaborator for remote data; errors are classified here so the worker can decide retry vs skip vs fail."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        min_interval: Optional[float] = None,
        demo: Optional[bool] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.api_ninjas_key
        self.base_url = (base_url or settings.api_ninjas_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self.min_interval = min_interval if min_interval is not None else settings.min_request_interval_seconds
        self.demo = settings.api_ninjas_demo if demo is None else demo
        self.session = session or requests.Session()
        self.session.headers.update({"X-Api-Key": self.api_key, "Accept": "application/json"})
        self._clock = clock
        self._sleep = sleep
        self._pace_lock = threading.Lock()
        self._last_request = 0.0

    def _pace(self) -> None:
        """Block so that consecutive requests (across worker threads) are at least min_interval apart."""
        with self._pace_lock:
            wait = self.min_interval - (self._clock() - self._last_request)
            if wait > 0:
                self._sleep(wait)
            self._last_request = self._clock()

    def fetch(self, ticker: str, year: int, quarter: int) -> Dict[str, Any]:
        """Return {ticker, year, quarter, date, transcript} for one earnings call."""
        ticker = validate_ticker(ticker)
        if not is_valid_quarter(year, quarter):
            raise ValidationError(f"Invalid quarter: {format_quarter(year, quarter)}")

        if self.demo:
            logger.info("transcript_demo", extra={"ticker": ticker, "year": year, "quarter": quarter})
            return demo_transcript(ticker, year, quarter)

        self._pace()
        url = f"{self.base_url}/earningstranscript"
        params = {"ticker": ticker, "year": year, "quarter": quarter}
        t0 = time.perf_counter()
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransientRemoteError(f"Timeout fetching {ticker} {format_quarter(year, quarter)}") from e
        except requests.ConnectionError as e:
            raise TransientRemoteError(f"Connection error fetching {ticker}: {e}") from e
        except requests.RequestException as e:
            raise RemoteError(f"Request failed for {ticker}: {e}") from e

        latency_ms = int((time.perf_counter() - t0) * 1000)
        logger.debug(
            "transcript_response",
            extra={"ticker": ticker, "year": year, "quarter": quarter, "status": resp.status_code, "latency_ms": latency_ms},
        )
        return self._parse(resp, ticker, year, quarter)

    def _parse(self, resp: requests.Response, ticker: str, year: int, quarter: int) -> Dict[str, Any]:
        status = resp.status_code
        where = f"{ticker} {format_quarter(year, quarter)}"
        if status == 404:
            raise NotAvailable(f"No transcript for {where}")
        if status == 429:
            raise TransientRemoteError(f"Rate limited fetching {where}")
        if status >= 500:
            raise TransientRemoteError(f"Upstream {status} fetching {where}")
        if status == 400:
            raise ValidationError(f"Rejected request for {where}: {resp.text[:200]}")
        if status != 200:
            raise RemoteError(f"Unexpected status {status} fetching {where}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteError(f"Malformed JSON for {where}") from e

        # The endpoint answers [] or {} when it has nothing for that quarter.
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            raise RemoteError(f"Unexpected payload type for {where}: {type(data).__name__}")
        text = data.get("transcript")
        if not isinstance(text, str) or not text.strip():
            raise NotAvailable(f"Empty transcript for {where}")

        return {
            "ticker": (data.get("ticker") or ticker).upper(),
            "year": int(data.get("year") or year),
            "quarter": int(data.get("quarter") or quarter),
            "date": data.get("date") or "",
            "transcript": text,
        }


def demo_transcript(ticker: str, year: int, quarter: int) -> Dict[str, Any]:
    """Deterministic sample transcript used when API_NINJAS_DEMO is on (no premium key)."""
    q = f"Q{quarter}"
    text = (
        f"{ticker} {q} {year} Earnings Call Transcript\n\n"
        f"Operator: Good morning and welcome to {ticker}'s {q} {year} earnings conference call.\n\n"
        f"CEO: Thank you for joining us today. I'm pleased to report our {q} results, which demonstrate "
        "continued growth and strong operational performance across all business segments.\n\n"
        "CFO: Our financial position remains strong. Revenue increased 12% year-over-year and our "
        "balance sheet is robust.\n\n"
        "Analyst: Can you provide more details on your growth strategy for the upcoming quarters?\n\n"
        "CEO: We can repurpose our existing logistics network for adjacent markets with very little capital.\n\n"
        f"Management: Thank you for your questions and continued interest in {ticker}.\n"
    )
    return {
        "ticker": ticker,
        "year": year,
        "quarter": quarter,
        "date": f"{year}-{quarter * 3:02d}-15",
        "transcript": text,
    }
