import logging

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from transcript_hub.core.errors import InvalidTransition, JobNotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


def as_http_500(e: Exception) -> HTTPException:
    """Log exception and return a generic 500 HTTPException (no internal details leaked).
    Why available: Centralized error handling so API never leaks stack traces or internal state to clients."""
    logger.error("unhandled_api_error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")


def engine_error_response(e: Exception) -> JSONResponse:
    """Map engine errors to the job API's {error} bodies: 404 unknown job, 409 illegal transition, 400 bad input, 503 storage failure."""
    if isinstance(e, JobNotFound):
        return JSONResponse(status_code=404, content={"error": "Job not found"})
    if isinstance(e, InvalidTransition):
        return JSONResponse(status_code=409, content={"error": str(e), "status": e.status})
    if isinstance(e, ValidationError):
        return JSONResponse(status_code=400, content={"error": str(e)})
    if isinstance(e, PersistenceError):
        logger.error("storage_error", exc_info=e)
        return JSONResponse(status_code=503, content={"error": "Storage unavailable"})
    raise as_http_500(e)
