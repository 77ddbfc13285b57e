from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for API bodies: camelCase on the wire, snake_case in Python. Why available: Keeps the public JSON shape of the job API while handlers use Python names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuarterIn(CamelModel):
    year: int = Field(..., ge=2000, le=2100)
    quarter: int = Field(..., ge=1, le=4)


class BulkFetchRequest(CamelModel):
    """Request body for POST /jobs/bulk-fetch. Why available: Carries tickers plus either explicit quarters or a lookback count."""

    tickers: List[str] = Field(..., min_length=1)
    quarters: Optional[List[QuarterIn]] = Field(None, description="Explicit quarters applied to every ticker")
    quarter_count: Optional[int] = Field(None, ge=1, description="How many recent quarters to search when quarters is omitted")
    force_refresh: bool = False

    @field_validator("tickers")
    @classmethod
    def tickers_not_blank(cls, v):
        """Reject empty or over-long ticker strings before they reach the engine."""
        for t in v:
            if not (t or "").strip() or len(t.strip()) > 10:
                raise ValueError(f"invalid ticker: {t!r}")
        return v


class BulkUploadRequest(CamelModel):
    file_content: str = Field(..., min_length=1, description="Ticker list, one per line")
    quarter_count: Optional[int] = Field(None, ge=1)
    force_refresh: bool = False


class BulkSummaryRequest(CamelModel):
    """Request body for POST /jobs/bulk-summary. Exactly what gets summarized: explicit transcript keys, all unsummarized transcripts of some tickers, or all unsummarized transcripts."""

    tickers: Optional[List[str]] = None
    transcript_keys: Optional[List[str]] = None
    process_all: bool = False
    force_refresh: bool = False
    analyst_types: Optional[List[str]] = None


class JobCreatedResponse(CamelModel):
    job_id: str
    status: str
    total: int = Field(..., ge=0)


class JobSummary(CamelModel):
    job_id: str
    job_type: str
    status: str
    current: int
    total: int
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


class OkResponse(BaseModel):
    ok: bool = True
    status: Optional[str] = None


class ClearedResponse(BaseModel):
    cleared: int = Field(..., ge=0)


class CountResponse(BaseModel):
    count: int = Field(..., ge=0)
    chunks: Optional[int] = None


class LimitsResponse(CamelModel):
    """Response for GET /limits. Why available: Lets clients size submissions before they are rejected."""

    worker_pool_width: int
    max_retries: int
    default_quarter_count: int
    max_quarter_count: int
    max_tickers_per_job: int
    max_total_tasks: int
    cache_chunk_size: int
    rate_limit_requests: int
    rate_limit_window_seconds: int
