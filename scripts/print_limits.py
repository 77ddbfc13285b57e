#!/usr/bin/env python3
"""Print job engine and API limits (from config). Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from transcript_hub.core.config import settings


def main():
    """Print pool width, retry policy, quarter search window, job caps, cache chunking and rate limit."""
    print("Job engine & API limits")
    print("-----------------------")
    print(f"  WORKER_POOL_WIDTH     = {settings.worker_pool_width} (concurrent items per job)")
    print(f"  MAX_RETRIES           = {settings.max_retries} (backoff {settings.retry_backoff_seconds}s x 2^attempt)")
    print(f"  DEFAULT_QUARTER_COUNT = {settings.default_quarter_count} (max {settings.max_quarter_count})")
    print(f"  MAX_TICKERS_PER_JOB   = {settings.max_tickers_per_job}")
    print(f"  MAX_TOTAL_TASKS       = {settings.max_total_tasks}")
    print(f"  CACHE_CHUNK_SIZE      = {settings.cache_chunk_size} entries per chunk file")
    print(f"  Rate limit            = {settings.rate_limit_requests} requests / {settings.rate_limit_window_seconds} s (per client IP)")
    print(f"  DATA_DIR              = {settings.data_dir}")
    print("")
    print("Env: see .env.example")


if __name__ == "__main__":
    main()
