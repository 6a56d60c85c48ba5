"""HTTP middleware: request ids, error translation, request logging and timing."""

import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status declared by the error class; rule lookups that miss are 404."""
    return error.http_status


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for error handling and request logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with error handling."""
        request_id = str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown"
        )

        try:
            logger.info(f"Request started: {request.method} {request.url.path}")

            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            duration = time.time() - start_time
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )

            return JSONResponse(
                status_code=status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )

            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for detailed request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details."""
        start_time = time.time()

        logger.debug(
            f"Request details: {request.method} {request.url} - "
            f"Query params: {dict(request.query_params)}"
        )

        response = await call_next(request)

        duration = time.time() - start_time
        logger.debug(
            f"Response details: Status {response.status_code} - "
            f"Duration: {duration:.3f}s"
        )

        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware that flags slow requests and reports response time."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Monitor request performance."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
