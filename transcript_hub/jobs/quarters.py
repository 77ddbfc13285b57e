"""Fiscal quarter arithmetic and the lazy most-recent-first quarter search used when a fetch job names no explicit quarter."""
from datetime import date
from typing import Callable, Iterator, Optional, Tuple

Quarter = Tuple[int, int]  # (year, quarter)

MIN_YEAR = 2000


def quarter_of(day: date) -> Quarter:
    """Return the calendar (year, quarter) containing the given date."""
    return day.year, (day.month - 1) // 3 + 1


def previous_quarter(year: int, quarter: int) -> Quarter:
    """Step one quarter back; Q1 rolls over to Q4 of the previous year."""
    if quarter <= 1:
        return year - 1, 4
    return year, quarter - 1


def next_quarter(year: int, quarter: int) -> Quarter:
    if quarter >= 4:
        return year + 1, 1
    return year, quarter + 1


def is_valid_quarter(year: int, quarter: int, today: Optional[date] = None) -> bool:
    """True for quarter 1..4 and a year between 2000 and next year."""
    today = today or date.today()
    return 1 <= quarter <= 4 and MIN_YEAR <= year <= today.year + 1


def format_quarter(year: int, quarter: int) -> str:
    return f"Q{quarter} {year}"


class QuarterSearch:
    """Bounded, lazily produced sequence of (year, quarter) candidates for one ticker, most recent first.

    Iterating starts a fresh walk from `start` (or the quarter containing today), so the same
    search can be replayed after a resume. Callers stop consuming at the first quarter for which
    a transcript exists; candidates after that are never computed.
    """

    def __init__(
        self,
        ticker: str,
        lookback: int,
        start: Optional[Quarter] = None,
        today: Callable[[], date] = date.today,
    ):
        if lookback <= 0:
            raise ValueError("lookback must be > 0")
        self.ticker = ticker
        self.lookback = lookback
        self._start = start
        self._today = today

    def __iter__(self) -> Iterator[Quarter]:
        year, quarter = self._start or quarter_of(self._today())
        for _ in range(self.lookback):
            yield year, quarter
            year, quarter = previous_quarter(year, quarter)

    def __repr__(self) -> str:
        return f"QuarterSearch({self.ticker!r}, lookback={self.lookback})"
