"""One-off migration of a monolithic transcripts.json ({key: payload}) into the chunked cache."""
import logging
import os
from typing import Any, Dict, Iterator, Optional, Tuple

import ijson

from transcript_hub.cache.chunked_store import ChunkedCacheStore
from transcript_hub.summaries.store import SummaryStore

logger = logging.getLogger(__name__)


def iter_monolith(path: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Stream (key, payload) pairs out of a top-level JSON object without loading the whole document.
    Why available: The legacy cache file is too large to json.load; ijson yields one entry at a time."""
    with open(path, "rb") as handle:
        for key, value in ijson.kvitems(handle, "", use_float=True):
            if isinstance(value, dict):
                yield key, value
            else:
                logger.warning("migrate_skipped_non_object", extra={"key": key})


def migrate_monolith(source: str, store: ChunkedCacheStore, summary_store: Optional[SummaryStore] = None) -> int:
    """Copy every entry of the monolithic cache file into the chunked store. Returns the number of entries written.
    With a summary_store, every migrated transcript also gets a relational row so summary jobs can select it."""
    if not os.path.exists(source):
        raise FileNotFoundError(f"Cache file not found: {source}")
    logger.info("migrate_started", extra={"source": source, "bytes": os.path.getsize(source)})
    written = store.put_many(iter_monolith(source))
    logger.info("migrate_finished", extra={"source": source, "entries": written, "chunks": store.chunk_count()})
    if summary_store is not None:
        summary_store.sync_from_cache(store)
    return written
