import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from transcript_hub.cache.keys import cache_key
from transcript_hub.core.config import settings
from transcript_hub.core.errors import TranscriptHubError
from transcript_hub.guardrails.errors import as_http_500, engine_error_response
from transcript_hub.guardrails.rate_limit import SimpleRateLimiter
from transcript_hub.jobs.engine import JobEngine
from transcript_hub.jobs.models import Job
from transcript_hub.models.schemas import (
    BulkFetchRequest,
    BulkSummaryRequest,
    BulkUploadRequest,
    ClearedResponse,
    CountResponse,
    JobCreatedResponse,
    JobSummary,
    LimitsResponse,
    OkResponse,
)
from transcript_hub.observability.logging import setup_logging
from transcript_hub.observability.middleware import RequestTimingMiddleware, get_request_id

# -------------------------
# App setup
# -------------------------

logger = logging.getLogger(__name__)

router = APIRouter()


def check_rate_limit(request: Request) -> None:
    request.app.state.rate_limiter.check(request)


def get_engine(request: Request) -> JobEngine:
    """Return the app's JobEngine, building it from settings on first use.
    Why available: Handlers depend on this instead of a module global so tests can inject an engine with fake clients."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = JobEngine.from_settings()
        request.app.state.engine = engine
        engine.recover()
    return engine


def _created(job: Job) -> JobCreatedResponse:
    return JobCreatedResponse(job_id=job.id, status=job.status, total=job.progress.total)


def _summary(job: Job) -> JobSummary:
    return JobSummary(
        job_id=job.id,
        job_type=job.job_type,
        status=job.status,
        current=job.progress.current,
        total=job.progress.total,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error=job.error,
    )


# -------------------------
# Root
# -------------------------

@router.get("/")
def root():
    """Returns a minimal welcome payload with app name and docs URL."""
    return {"app": "Transcript Hub", "docs": "/docs"}


@router.get("/health")
def health():
    """Returns 200 OK with status. Used by load balancers and probes to check if the API is up."""
    return {"status": "ok"}


@router.get("/limits", response_model=LimitsResponse, response_model_by_alias=True)
def limits(request: Request):
    """Returns current job limits (pool width, retries, quarter search window, ticker and task caps, chunk size, rate limit).
    Why available: Lets clients size bulk submissions before they are rejected."""
    check_rate_limit(request)
    return LimitsResponse(
        worker_pool_width=settings.worker_pool_width,
        max_retries=settings.max_retries,
        default_quarter_count=settings.default_quarter_count,
        max_quarter_count=settings.max_quarter_count,
        max_tickers_per_job=settings.max_tickers_per_job,
        max_total_tasks=settings.max_total_tasks,
        cache_chunk_size=settings.cache_chunk_size,
        rate_limit_requests=settings.rate_limit_requests,
        rate_limit_window_seconds=settings.rate_limit_window_seconds,
    )


# -------------------------
# Job submission
# -------------------------

@router.post("/jobs/bulk-fetch", response_model=JobCreatedResponse, response_model_by_alias=True)
def bulk_fetch(req: BulkFetchRequest, request: Request, engine: JobEngine = Depends(get_engine)):
    """Starts a bulk transcript fetch for tickers x quarters (or the last quarterCount quarters per ticker) and returns the job id.
    Why available: Main entry point for filling the transcript cache in bulk; clients poll /jobs/{id}/progress."""
    check_rate_limit(request)
    try:
        job = engine.submit_fetch(
            req.tickers,
            quarters=[q.model_dump() for q in req.quarters] if req.quarters else None,
            quarter_count=req.quarter_count,
            force_refresh=req.force_refresh,
        )
    except TranscriptHubError as e:
        return engine_error_response(e)
    return _created(job)


@router.post("/jobs/bulk-upload", response_model=JobCreatedResponse, response_model_by_alias=True)
def bulk_upload(req: BulkUploadRequest, request: Request, engine: JobEngine = Depends(get_engine)):
    """Starts a bulk fetch from an uploaded ticker list (one ticker per line, extra columns ignored)."""
    check_rate_limit(request)
    try:
        job = engine.submit_upload(req.file_content, quarter_count=req.quarter_count, force_refresh=req.force_refresh)
    except TranscriptHubError as e:
        return engine_error_response(e)
    return _created(job)


@router.post("/jobs/bulk-summary", response_model=JobCreatedResponse, response_model_by_alias=True)
def bulk_summary(req: BulkSummaryRequest, request: Request, engine: JobEngine = Depends(get_engine)):
    """Starts an AI summary job over cached transcripts that do not have summaries yet (or all of them with forceRefresh)."""
    check_rate_limit(request)
    try:
        job = engine.submit_summary(
            tickers=req.tickers,
            transcript_keys=req.transcript_keys,
            process_all=req.process_all,
            force_refresh=req.force_refresh,
            analyst_types=req.analyst_types,
        )
    except TranscriptHubError as e:
        return engine_error_response(e)
    return _created(job)


# -------------------------
# Job queries
# -------------------------

@router.get("/jobs", response_model=List[JobSummary], response_model_by_alias=True)
def list_jobs(request: Request, status: Optional[str] = None, job_type: Optional[str] = Query(None, alias="jobType"), engine: JobEngine = Depends(get_engine)):
    check_rate_limit(request)
    return [_summary(j) for j in engine.list_jobs(status=status, job_type=job_type)]


@router.delete("/jobs/completed", response_model=ClearedResponse)
def clear_completed(request: Request, engine: JobEngine = Depends(get_engine)):
    """Removes completed, failed and cancelled jobs from the store."""
    check_rate_limit(request)
    try:
        return ClearedResponse(cleared=engine.clear_finished())
    except TranscriptHubError as e:
        return engine_error_response(e)


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Returns the full job record including per-item results."""
    check_rate_limit(request)
    try:
        return engine.get_job(job_id).to_dict()
    except TranscriptHubError as e:
        return engine_error_response(e)


@router.delete("/jobs/{job_id}", response_model=OkResponse)
def delete_job(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Removes one finished job. 409 while the job is pending, running or paused."""
    check_rate_limit(request)
    try:
        engine.delete_job(job_id)
    except TranscriptHubError as e:
        return engine_error_response(e)
    return OkResponse(ok=True)


@router.get("/jobs/{job_id}/progress")
def job_progress(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Returns status, progress lists and estimated seconds remaining for a job.
    Why available: Polling endpoint for the bulk upload UI; reads only committed snapshots."""
    check_rate_limit(request)
    try:
        return engine.progress(job_id)
    except TranscriptHubError as e:
        return engine_error_response(e)


# -------------------------
# Job control
# -------------------------

def _control(action, job_id: str, request: Request):
    check_rate_limit(request)
    try:
        job = action(job_id)
    except TranscriptHubError as e:
        return engine_error_response(e)
    except Exception as e:
        raise as_http_500(e)
    return OkResponse(ok=True, status=job.status)


@router.post("/jobs/{job_id}/pause", response_model=OkResponse)
def pause_job(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Requests a pause; the job stops dispatching and becomes paused once in-flight items finish. 409 if the job is not running."""
    return _control(engine.pause, job_id, request)


@router.post("/jobs/{job_id}/resume", response_model=OkResponse)
def resume_job(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Resumes a paused job from its persisted progress. 409 while a requested pause is still draining in-flight items, since the job is still running until then."""
    return _control(engine.resume, job_id, request)


@router.post("/jobs/{job_id}/cancel", response_model=OkResponse)
def cancel_job(job_id: str, request: Request, engine: JobEngine = Depends(get_engine)):
    """Cancels a running (cooperatively) or paused (immediately) job. Cancelled jobs cannot be resumed."""
    return _control(engine.cancel, job_id, request)


# -------------------------
# Transcripts (cache)
# -------------------------

@router.get("/transcripts/count", response_model=CountResponse)
def transcripts_count(request: Request, engine: JobEngine = Depends(get_engine)):
    check_rate_limit(request)
    return CountResponse(count=engine.cache.count(), chunks=engine.cache.chunk_count())


@router.get("/transcripts/{ticker}/{year}/{quarter}")
def get_transcript(ticker: str, year: int, quarter: int, request: Request, engine: JobEngine = Depends(get_engine)):
    """Returns a cached transcript with any stored AI summaries. 404 if it has not been fetched."""
    check_rate_limit(request)
    key = cache_key(ticker, year, quarter)
    try:
        payload = engine.cache.get(key)
        if payload is None:
            raise HTTPException(status_code=404, detail="Transcript not found")
        return {"key": key, "transcript": payload, "summaries": engine.summary_store.get_summaries(key)}
    except HTTPException:
        raise
    except TranscriptHubError as e:
        return engine_error_response(e)
    except Exception as e:
        raise as_http_500(e)


def create_app(engine: Optional[JobEngine] = None, rate_limiter: Optional[SimpleRateLimiter] = None) -> FastAPI:
    """Build the FastAPI app. A provided engine is used as-is; otherwise one is built from settings on first request or at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        if getattr(app.state, "engine", None) is None:
            app.state.engine = JobEngine.from_settings()
        app.state.engine.recover()
        yield
        app.state.engine.shutdown()

    app = FastAPI(title="Transcript Hub", lifespan=lifespan)
    app.state.engine = engine
    app.state.rate_limiter = rate_limiter or SimpleRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestTimingMiddleware)
    app.include_router(router)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.error(
            "unhandled_request_error", exc_info=exc, extra={"request_id": get_request_id(request)}
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app


app = create_app()
