"""
Codification error -> HTTP response mapping
"""
import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from packages.common.exceptions import (
    CodificationError,
    ConcurrentModificationError,
    DuplicateItemCodeError,
    InvalidArgumentError,
    NotFoundError,
    ResolverUnavailableError,
)

logger = structlog.get_logger()

# Most specific first
STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateItemCodeError, status.HTTP_409_CONFLICT),
    (InvalidArgumentError, status.HTTP_400_BAD_REQUEST),
    (ResolverUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
]


def status_for(exc: CodificationError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def codification_exception_handler(request: Request, exc: CodificationError):
    """Translate domain errors into structured JSON responses"""
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("codification_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=status_code,
        error=str(exc))

    headers = None
    if isinstance(exc, ResolverUnavailableError):
        headers = {"Retry-After": "30"}

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.to_dict()},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CodificationError, codification_exception_handler)
