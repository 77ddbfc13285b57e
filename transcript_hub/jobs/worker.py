"""Per-item execution for the two job types: fetch a transcript into the cache, or generate AI summaries for a cached transcript."""
import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from transcript_hub.cache.chunked_store import ChunkedCacheStore
from transcript_hub.cache.keys import cache_key
from transcript_hub.core.config import settings
from transcript_hub.core.errors import (
    NotAvailable,
    PersistenceError,
    RemoteError,
    TransientRemoteError,
    ValidationError,
)
from transcript_hub.jobs.models import ItemResult, ItemStatus, JobOptions, SkipReason
from transcript_hub.jobs.quarters import QuarterSearch, format_quarter
from transcript_hub.jobs.resolver import WorkItem
from transcript_hub.summaries.store import SummaryStore
from transcript_hub.utils.retry import with_retry

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    """Classified result of one work item, before it is folded into the job's progress."""

    item: WorkItem
    status: str
    reason: Optional[str] = None
    year: Optional[int] = None
    quarter: Optional[int] = None
    transcript_length: Optional[int] = None
    summaries_generated: Optional[int] = None
    elapsed_ms: int = 0

    def to_result(self) -> Dict[str, Any]:
        return ItemResult(
            item=self.item.key,
            status=self.status,
            year=self.year,
            quarter=self.quarter,
            transcript_length=self.transcript_length,
            summaries_generated=self.summaries_generated,
            reason=self.reason,
            elapsed_ms=self.elapsed_ms,
        ).to_dict()


class _RetryingRunner:
    def __init__(self, retries: Optional[int], backoff_seconds: Optional[float], sleep: Callable[[float], None]):
        self.retries = settings.max_retries if retries is None else retries
        self.backoff_seconds = settings.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._sleep = sleep

    def _call(self, fn: Callable[[], Any], label: str) -> Any:
        return with_retry(
            fn,
            retries=self.retries,
            backoff_seconds=self.backoff_seconds,
            retry_on=(TransientRemoteError,),
            sleep=self._sleep,
            label=label,
        )

    def run(self, item: WorkItem, options: JobOptions, quarter_count: int) -> ItemOutcome:
        """Execute one item and classify it. PersistenceError propagates; any other error marks the item failed."""
        t0 = time.perf_counter()
        try:
            outcome = self._run(item, options, quarter_count)
        except PersistenceError:
            raise
        except TransientRemoteError as e:
            outcome = ItemOutcome(item, ItemStatus.FAILED, reason=f"retries exhausted: {e}")
        except (RemoteError, ValidationError) as e:
            outcome = ItemOutcome(item, ItemStatus.FAILED, reason=str(e))
        except Exception as e:
            logger.exception("item_unexpected_error", extra={"item": item.key})
            outcome = ItemOutcome(item, ItemStatus.FAILED, reason=f"unexpected error: {e}")
        outcome.elapsed_ms = int((time.perf_counter() - t0) * 1000)
        return outcome

    def _run(self, item: WorkItem, options: JobOptions, quarter_count: int) -> ItemOutcome:
        raise NotImplementedError


class FetchItemRunner(_RetryingRunner):
    """Fetch one ticker/quarter (or search back through recent quarters) and upsert the transcript into the chunked cache.
    Why available: The work the bulk fetch job performs per item; also records the transcript in the relational store so summary jobs can find it."""

    def __init__(
        self,
        client,
        cache: ChunkedCacheStore,
        summary_store: Optional[SummaryStore] = None,
        retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ):
        super().__init__(retries, backoff_seconds, sleep)
        self.client = client
        self.cache = cache
        self.summary_store = summary_store
        self._today = today

    def _run(self, item: WorkItem, options: JobOptions, quarter_count: int) -> ItemOutcome:
        if item.explicit:
            return self._fetch_quarter(item, item.year, item.quarter, options)

        for year, quarter in QuarterSearch(item.ticker, quarter_count, today=self._today):
            outcome = self._fetch_quarter(item, year, quarter, options)
            if outcome.status != ItemStatus.NOT_AVAILABLE:
                return outcome
        return ItemOutcome(
            item,
            ItemStatus.NOT_AVAILABLE,
            reason=f"no transcript in the last {quarter_count} quarters",
        )

    def _fetch_quarter(self, item: WorkItem, year: int, quarter: int, options: JobOptions) -> ItemOutcome:
        key = cache_key(item.ticker, year, quarter)
        if not options.force_refresh and self.cache.exists(key):
            return ItemOutcome(item, ItemStatus.SKIPPED, reason=SkipReason.CACHED, year=year, quarter=quarter)

        try:
            payload = self._call(lambda: self.client.fetch(item.ticker, year, quarter), label=key)
        except NotAvailable as e:
            logger.debug("transcript_not_available", extra={"item": item.key, "quarter": format_quarter(year, quarter)})
            return ItemOutcome(item, ItemStatus.NOT_AVAILABLE, reason=str(e) or SkipReason.NOT_AVAILABLE, year=year, quarter=quarter)

        self.cache.put(key, payload)
        text = payload.get("transcript") or ""
        self._record_transcript(item, year, quarter, payload.get("date"), len(text))
        return ItemOutcome(item, ItemStatus.SUCCESS, year=year, quarter=quarter, transcript_length=len(text))

    def _record_transcript(self, item: WorkItem, year: int, quarter: int, call_date: Optional[str], length: int) -> None:
        if self.summary_store is None:
            return
        # The cache is the source of truth; the relational row is best effort.
        try:
            self.summary_store.upsert_transcript(item.ticker, year, quarter, call_date or None, length)
        except PersistenceError:
            logger.warning("transcript_row_upsert_failed", exc_info=True, extra={"item": item.key})


class SummaryItemRunner(_RetryingRunner):
    """Generate one summary per analyst type for a cached transcript and store them in the relational store."""

    def __init__(
        self,
        client,
        cache: ChunkedCacheStore,
        summary_store: SummaryStore,
        retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(retries, backoff_seconds, sleep)
        self.client = client
        self.cache = cache
        self.summary_store = summary_store

    def _run(self, item: WorkItem, options: JobOptions, quarter_count: int) -> ItemOutcome:
        key = item.key
        try:
            already = not options.force_refresh and self.summary_store.has_summary(key)
        except PersistenceError as e:
            return self._store_failed(item, e)
        if already:
            return ItemOutcome(item, ItemStatus.SKIPPED, reason=SkipReason.ALREADY_SUMMARIZED, year=item.year, quarter=item.quarter)

        payload = self.cache.get(key)
        text = (payload or {}).get("transcript") or ""
        if not text.strip():
            return ItemOutcome(item, ItemStatus.FAILED, reason="transcript missing from cache", year=item.year, quarter=item.quarter)

        analyst_types = options.analyst_types or settings.summary_analyst_types
        summaries: List[Dict[str, Any]] = []
        for analyst in analyst_types:
            context = {"ticker": item.ticker, "quarter": format_quarter(item.year, item.quarter), "analyst_type": analyst}
            summaries.append(self._call(lambda: self.client.summarize(text, context), label=f"{key}:{analyst}"))

        try:
            saved = self.summary_store.save_summaries(key, summaries, model=getattr(self.client, "model", None))
        except PersistenceError as e:
            return self._store_failed(item, e)
        return ItemOutcome(
            item,
            ItemStatus.SUCCESS,
            year=item.year,
            quarter=item.quarter,
            transcript_length=len(text),
            summaries_generated=saved,
        )

    def _store_failed(self, item: WorkItem, error: PersistenceError) -> ItemOutcome:
        # Summary rows are per item; only cache and job store failures stop the job.
        logger.warning("summary_store_failed", extra={"item": item.key, "error": str(error)})
        return ItemOutcome(item, ItemStatus.FAILED, reason=str(error), year=item.year, quarter=item.quarter)
