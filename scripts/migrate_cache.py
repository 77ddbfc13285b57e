#!/usr/bin/env python3
"""Split a monolithic transcripts.json cache into the chunked cache layout.

Run from repo root:
    python scripts/migrate_cache.py cache/transcripts.json
    python scripts/migrate_cache.py --rebuild-index
"""
import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from transcript_hub.cache.chunked_store import ChunkedCacheStore
from transcript_hub.cache.migrate import migrate_monolith
from transcript_hub.core.config import settings
from transcript_hub.observability.logging import setup_logging
from transcript_hub.summaries.store import SummaryStore

logger = logging.getLogger("migrate_cache")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("source", nargs="?", help="Monolithic {key: payload} JSON file")
    parser.add_argument("--cache-dir", default=settings.cache_dir)
    parser.add_argument("--chunk-size", type=int, default=settings.cache_chunk_size)
    parser.add_argument("--rebuild-index", action="store_true", help="Rescan chunk files and rewrite the index segments")
    parser.add_argument("--skip-db", action="store_true", help="Do not record transcript rows in the summary database")
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    store = ChunkedCacheStore(args.cache_dir, capacity=args.chunk_size, max_resident_chunks=settings.cache_resident_chunks)

    if args.rebuild_index:
        count = store.rebuild_index()
        print(f"Indexed {count} entries in {store.chunk_count()} chunks under {args.cache_dir}")
        return 0

    if not args.source:
        parser.error("source is required unless --rebuild-index is given")

    summary_store = None if args.skip_db else SummaryStore(settings.database_path)
    try:
        written = migrate_monolith(args.source, store, summary_store=summary_store)
    finally:
        if summary_store is not None:
            summary_store.close()
    print(f"Migrated {written} entries into {store.chunk_count()} chunks under {args.cache_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
