"""
SQLite store for fetched transcripts and their AI summaries.
Thread-safe via check_same_thread=False + explicit locking.
"""
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from transcript_hub.cache.keys import cache_key, normalize_ticker, parse_cache_key
from transcript_hub.core.errors import PersistenceError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS transcripts (
    cache_key TEXT PRIMARY KEY,
    ticker TEXT NOT NULL,
    year INTEGER NOT NULL,
    quarter INTEGER NOT NULL,
    call_date TEXT,
    transcript_length INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (ticker, year, quarter)
);

CREATE INDEX IF NOT EXISTS idx_transcripts_ticker ON transcripts(ticker);

CREATE TABLE IF NOT EXISTS ai_summaries (
    cache_key TEXT NOT NULL,
    analyst_type TEXT NOT NULL,
    content TEXT NOT NULL,
    flags TEXT,
    model TEXT,
    created_at TEXT,
    PRIMARY KEY (cache_key, analyst_type),
    FOREIGN KEY (cache_key) REFERENCES transcripts(cache_key)
);
"""


class SummaryStore:
    """Relational record of transcripts known to the system and the AI summaries generated for them.
    Why available: Source of the summary job's work list (transcripts without summaries) and sink for summary results."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(f"Cannot open summary database {self.db_path}: {e}") from e

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                cur = self.conn.execute(sql, tuple(params))
                rows = cur.fetchall()
                self.conn.commit()
                return rows
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Summary database error: {e}") from e

    # ── Transcripts ──────────────────────────────────────────────────

    def upsert_transcript(self, ticker: str, year: int, quarter: int, call_date: Optional[str] = None, transcript_length: int = 0) -> str:
        """Record that a transcript exists in the cache. Returns its cache key."""
        key = cache_key(ticker, year, quarter)
        now = self._now()
        self._execute(
            """
            INSERT INTO transcripts (cache_key, ticker, year, quarter, call_date, transcript_length, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(cache_key) DO UPDATE SET
                call_date = excluded.call_date,
                transcript_length = excluded.transcript_length,
                updated_at = excluded.updated_at
            """,
            (key, normalize_ticker(ticker), int(year), int(quarter), call_date, int(transcript_length), now, now),
        )
        return key

    def upsert_transcripts(self, rows: Iterable[Tuple[str, int, int, Optional[str], int]]) -> int:
        """Bulk form of upsert_transcript for (ticker, year, quarter, call_date, transcript_length) rows, in one transaction."""
        now = self._now()
        params = [
            (cache_key(t, y, q), normalize_ticker(t), int(y), int(q), d, int(n or 0), now, now)
            for t, y, q, d, n in rows
        ]
        if not params:
            return 0
        with self._lock:
            try:
                self.conn.executemany(
                    """
                    INSERT INTO transcripts (cache_key, ticker, year, quarter, call_date, transcript_length, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        call_date = excluded.call_date,
                        transcript_length = excluded.transcript_length,
                        updated_at = excluded.updated_at
                    """,
                    params,
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Summary database error: {e}") from e
        return len(params)

    def transcript_keys(self) -> Set[str]:
        return {row["cache_key"] for row in self._execute("SELECT cache_key FROM transcripts")}

    def sync_from_cache(self, cache, keys: Optional[Iterable[str]] = None, tickers: Optional[List[str]] = None) -> int:
        """Record rows for cached transcripts the database does not know about yet. Returns how many rows were added.
        Why available: Transcripts can reach the cache without a row (a failed best-effort upsert, or a migrated legacy cache); summary jobs select their work from rows."""
        known = self.transcript_keys()
        wanted = {normalize_ticker(t) for t in tickers} if tickers else None
        rows = []
        for key in cache.keys() if keys is None else keys:
            if key in known:
                continue
            try:
                ticker, year, quarter = parse_cache_key(key)
            except ValueError:
                logger.warning("cache_key_unparseable", extra={"cache_key": key})
                continue
            if wanted is not None and ticker not in wanted:
                continue
            payload = cache.get(key)
            if payload is None:
                continue
            rows.append((ticker, year, quarter, payload.get("date") or None, len(payload.get("transcript") or "")))
        added = self.upsert_transcripts(rows)
        if added:
            logger.info("transcript_rows_synced", extra={"added": added})
        return added

    def count_transcripts(self) -> int:
        rows = self._execute("SELECT COUNT(*) AS n FROM transcripts")
        return int(rows[0]["n"])

    def list_unsummarized(self, tickers: Optional[List[str]] = None, include_summarized: bool = False) -> List[str]:
        """Cache keys of transcripts lacking any summary (or all transcripts when include_summarized), newest quarter first."""
        sql = "SELECT t.cache_key FROM transcripts t"
        clauses: List[str] = []
        params: List[Any] = []
        if not include_summarized:
            clauses.append("NOT EXISTS (SELECT 1 FROM ai_summaries s WHERE s.cache_key = t.cache_key)")
        if tickers:
            normalized = [normalize_ticker(t) for t in tickers]
            clauses.append(f"t.ticker IN ({','.join('?' for _ in normalized)})")
            params.extend(normalized)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY t.ticker, t.year DESC, t.quarter DESC"
        return [row["cache_key"] for row in self._execute(sql, params)]

    # ── Summaries ────────────────────────────────────────────────────

    def has_summary(self, key: str) -> bool:
        rows = self._execute("SELECT 1 FROM ai_summaries WHERE cache_key = ? LIMIT 1", (key,))
        return bool(rows)

    def save_summaries(self, key: str, summaries: List[Dict[str, Any]], model: Optional[str] = None) -> int:
        """Replace the stored summaries of one transcript. Each summary dict carries analyst_type, content and flags.
        A transcript row is created first when the transcript has none, so summaries of cache-only transcripts satisfy the foreign key."""
        ticker, year, quarter = parse_cache_key(key)
        now = self._now()
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT OR IGNORE INTO transcripts (cache_key, ticker, year, quarter, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (key, ticker, year, quarter, now, now),
                )
                self.conn.execute("DELETE FROM ai_summaries WHERE cache_key = ?", (key,))
                self.conn.executemany(
                    """
                    INSERT INTO ai_summaries (cache_key, analyst_type, content, flags, model, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (key, s["analyst_type"], s["content"], json.dumps(s.get("flags") or {}), model, now)
                        for s in summaries
                    ],
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Failed to save summaries for {key}: {e}") from e
        logger.debug("summaries_saved", extra={"cache_key": key, "count": len(summaries)})
        return len(summaries)

    def get_summaries(self, key: str) -> List[Dict[str, Any]]:
        rows = self._execute(
            "SELECT analyst_type, content, flags, model, created_at FROM ai_summaries WHERE cache_key = ? ORDER BY analyst_type",
            (key,),
        )
        out = []
        for row in rows:
            item = dict(row)
            item["flags"] = json.loads(item["flags"]) if item.get("flags") else {}
            out.append(item)
        return out
