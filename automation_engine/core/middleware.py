"""Request middleware: request ids, error responses and timing."""

import time
import uuid
from typing import Callable, List, Tuple, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .clock import utc_now
from .exceptions import (
    CapabilityError,
    ExecutionStateError,
    GraphValidationError,
    QueueConflictError,
    RecordNotFoundError,
    TransientError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins, so subclasses go before their bases.
ERROR_STATUS: List[Tuple[Type[WorkflowEngineError], int]] = [
    (GraphValidationError, 400),
    (RecordNotFoundError, 404),
    (ExecutionStateError, 409),
    (QueueConflictError, 409),
    (CapabilityError, 502),
    (TransientError, 503),
]


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status returned for an engine error."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and turn uncaught errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        route = f"{request.method} {request.url.path}"
        set_logging_context(request_id=request_id, method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{route} failed with {e.error_code}: {e.message}")
            response = JSONResponse(status_code=status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.exception(f"{route} raised {type(e).__name__}")
            response = JSONResponse(status_code=500, content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(e).__name__, "timestamp": utc_now().isoformat()},
                "request_id": request_id,
            })
        else:
            logger.info(f"{route} -> {response.status_code}")
        finally:
            clear_logging_context("request_id", "method", "path")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Report response time and warn about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > self.slow_request_threshold:
            logger.warning(
                f"Slow request {request.method} {request.url.path}: "
                f"{elapsed:.3f}s over {self.slow_request_threshold}s"
            )
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response
