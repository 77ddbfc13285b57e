"""OpenAI client for transcript summaries (api_key and timeout from config)."""
from typing import Any

from openai import OpenAI

from transcript_hub.core.config import settings

_openai_client: Any = None


def get_openai_client() -> OpenAI:
    """Return a singleton OpenAI client configured with api_key and the summary timeout from settings. Retries are left to the job worker.
    Why available: Single place to get the OpenAI client so the summary client and health checks share one connection pool."""
    global _openai_client
    if _openai_client is None:
        _openai_client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.summary_timeout_seconds,
            max_retries=0,
        )
    return _openai_client
