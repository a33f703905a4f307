"""
FastAPI Middleware for the Membership Registration API

Provides CORS configuration, request logging, and error mapping from the
domain exceptions to the standardized error response.
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from database.repositories import (
    DuplicateApplicantError,
    InvalidStaffError,
    NotFoundError,
)
from logging_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def setup_cors(app: FastAPI, allowed_origins: Optional[List[str]] = None) -> None:
    """Configure CORS middleware for the application.

    Origins come from the api.cors_origins config value and can be
    overridden via the CORS_ORIGINS environment variable (comma-separated).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",")]
    elif not allowed_origins:
        allowed_origins = DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        request.state.request_id = request_id
        request.state.start_time = start_time

        # Sanitize path to prevent log injection
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            sanitize_for_logging(request_id, 64),
        )

        try:
            response = await call_next(request)

            processing_time_ms = int((time.time() - start_time) * 1000)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

            logger.info(
                "Response: status=%d processing_time_ms=%d request_id=%s",
                response.status_code,
                processing_time_ms,
                sanitize_for_logging(request_id, 64),
            )
            return response

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                sanitize_for_logging(request_id, 64),
            )
            raise


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info("Not found: %s request_id=%s", sanitize_for_logging(str(exc)), _request_id(request))
    return create_error_response(code="NOT_FOUND", message=str(exc), status_code=404)


async def invalid_staff_handler(request: Request, exc: InvalidStaffError) -> JSONResponse:
    logger.warning("Invalid staff: %s request_id=%s", sanitize_for_logging(str(exc)), _request_id(request))
    return create_error_response(
        code="INVALID_STAFF",
        message=str(exc),
        status_code=400,
        field="staff_id",
        suggestion="Assign the application to an existing, active staff member",
    )


async def duplicate_applicant_handler(request: Request, exc: DuplicateApplicantError) -> JSONResponse:
    logger.warning("Duplicate applicant: request_id=%s", _request_id(request))
    return create_error_response(
        code="DUPLICATE_APPLICANT",
        message="An applicant with this email or fiscal code is already being registered",
        status_code=409,
        suggestion="Retry the submission",
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for request validation errors, reporting the first offending field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]

    logger.info(
        "Validation error: errors=%d first=%s request_id=%s",
        len(errors),
        sanitize_for_logging(first.get("msg", "")),
        _request_id(request),
    )
    return create_error_response(
        code="VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=422,
        field=".".join(location) or None,
    )


async def store_failure_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handler for database errors not anticipated by the domain layer."""
    logger.error(
        "Store failure: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )
    return create_error_response(
        code="STORE_FAILURE",
        message="The data store is temporarily unavailable. Please try again later.",
        status_code=503,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    # Generic error - sanitize message to prevent info leakage
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        _request_id(request),
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(InvalidStaffError, invalid_staff_handler)
    app.add_exception_handler(DuplicateApplicantError, duplicate_applicant_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, store_failure_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
