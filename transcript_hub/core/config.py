import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


class Settings(BaseModel):
    """Application settings loaded from environment: transcript source credentials, OpenAI model, data directory, cache chunking, worker pool and retry limits, quarter search limits, and prompt version.
    Why available: Single source of configuration so the job engine, cache and API all use consistent limits."""
    api_ninjas_key: str = os.getenv("API_NINJAS_KEY", "")
    api_ninjas_base_url: str = os.getenv("API_NINJAS_BASE_URL", "https://api.api-ninjas.com/v1")
    api_ninjas_demo: bool = _env_bool("API_NINJAS_DEMO")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-4o-mini")
    prompt_version: str = os.getenv("PROMPT_VERSION", "v1")
    data_dir: str = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))

    cache_chunk_size: int = int(os.getenv("CACHE_CHUNK_SIZE", "200"))
    cache_resident_chunks: int = int(os.getenv("CACHE_RESIDENT_CHUNKS", "8"))

    worker_pool_width: int = int(os.getenv("WORKER_POOL_WIDTH", "3"))
    max_retries: int = int(os.getenv("MAX_RETRIES", "3"))
    retry_backoff_seconds: float = float(os.getenv("RETRY_BACKOFF_SECONDS", "1.0"))
    fetch_timeout_seconds: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
    summary_timeout_seconds: float = float(os.getenv("SUMMARY_TIMEOUT_SECONDS", "300"))
    min_request_interval_seconds: float = float(os.getenv("MIN_REQUEST_INTERVAL_SECONDS", "0.1"))
    scheduler_tick_seconds: float = float(os.getenv("SCHEDULER_TICK_SECONDS", "0.2"))

    default_quarter_count: int = int(os.getenv("DEFAULT_QUARTER_COUNT", "4"))
    max_quarter_count: int = int(os.getenv("MAX_QUARTER_COUNT", "12"))
    max_tickers_per_job: int = int(os.getenv("MAX_TICKERS_PER_JOB", "1000"))
    max_total_tasks: int = int(os.getenv("MAX_TOTAL_TASKS", "10000"))

    summary_analyst_types: List[str] = _env_list("SUMMARY_ANALYST_TYPES", "Claude,Gemini,DeepSeek,Grok")
    summary_max_transcript_chars: int = int(os.getenv("SUMMARY_MAX_TRANSCRIPT_CHARS", "10000"))

    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @field_validator(
        "cache_chunk_size",
        "cache_resident_chunks",
        "worker_pool_width",
        "default_quarter_count",
        "max_quarter_count",
        "max_tickers_per_job",
        "max_total_tasks",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure size and concurrency limits are positive integers. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("max_retries")
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @property
    def jobs_dir(self) -> str:
        return os.path.join(self.data_dir, "jobs")

    @property
    def cache_dir(self) -> str:
        return os.path.join(self.data_dir, "cache")

    @property
    def database_path(self) -> str:
        return os.path.join(self.data_dir, "transcripts.db")


settings = Settings()
