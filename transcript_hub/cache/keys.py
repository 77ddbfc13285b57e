import re
from typing import Tuple

_KEY_RE = re.compile(r"^(?P<ticker>[A-Z0-9.\-]+)-(?P<year>\d{4})-Q(?P<quarter>[1-4])$")


def normalize_ticker(ticker: str) -> str:
    return (ticker or "").strip().upper()


def cache_key(ticker: str, year: int, quarter: int) -> str:
    """Build the transcript cache key, e.g. AAPL-2024-Q3. Ticker is upper-cased so lookups are case-insensitive."""
    return f"{normalize_ticker(ticker)}-{int(year)}-Q{int(quarter)}"


def parse_cache_key(key: str) -> Tuple[str, int, int]:
    """Split a cache key back into (ticker, year, quarter). Raises ValueError on a malformed key."""
    m = _KEY_RE.match(key or "")
    if not m:
        raise ValueError(f"Malformed cache key: {key!r}")
    return m.group("ticker"), int(m.group("year")), int(m.group("quarter"))
