"""
FastAPI Membership Registration API Server

Provides REST endpoints for submitting membership applications and for the
staff workflow around them (listing, review, assignment, audit history), plus
a WebSocket endpoint streaming live status updates.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import Generator, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from api.models import (
    ApplicationCreate,
    ApplicationDetailResponse,
    ApplicationListEntry,
    ApplicationListResponse,
    ApplicationResponse,
    ApplicationWithDocuments,
    AssignRequest,
    AuditEntryResponse,
    AuditHistoryResponse,
    DocumentResponse,
    ErrorResponse,
    HealthResponse,
    MutationResponse,
    PaginationResponse,
    StatusUpdateRequest,
    SubmissionResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from api.realtime import router as realtime_router
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import DatabaseSessionProvider, get_db_provider
from database.lifecycle_service import ApplicationLifecycleService
from database.models import ApplicationStatus, PaymentStatus
from database.monitoring import check_health
from database.query_service import ApplicationFilter, ApplicationQueryService
from database.records import StaffRecord
from database.repositories import NotFoundError, StaffRepository
from logging_utils import setup_logging
from notifications import NotificationHub

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH")
CREATE_TABLES = os.getenv("DB_CREATE_TABLES", "false").lower() == "true"

API_PREFIX = "/api/v1"

# Global state
_config: ConfigManager = get_config(CONFIG_PATH)
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    return _config


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
    config: ConfigManager = Depends(get_config_instance),
) -> str:
    """Verify API key for protected endpoints.

    If no API key is configured, checking is disabled.
    """
    if not config.api.api_key:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != config.api.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_provider() -> DatabaseSessionProvider:
    """Dependency to get the process-wide database provider."""
    provider = get_db_provider()
    if not provider.initialized:
        provider.init()
    return provider


def get_session(provider: DatabaseSessionProvider = Depends(get_provider)) -> Generator[Session, None, None]:
    """Dependency yielding a request-scoped session for reads."""
    yield from provider.get_session()


def get_hub(request: Request) -> NotificationHub:
    """Dependency to get the notification hub."""
    return request.app.state.hub


def get_lifecycle_service(
    provider: DatabaseSessionProvider = Depends(get_provider),
    config: ConfigManager = Depends(get_config_instance),
) -> ApplicationLifecycleService:
    """Dependency to get the lifecycle engine."""
    return ApplicationLifecycleService(
        provider, registration_fee=config.applications.registration_fee
    )


def get_acting_staff(
    x_staff_id: Optional[int] = Header(default=None, alias="X-Staff-ID"),
    provider: DatabaseSessionProvider = Depends(get_provider),
) -> StaffRecord:
    """Resolve the acting staff member from the X-Staff-ID header.

    The external credential layer sets this header after authenticating the
    caller; it must name an existing, active staff member.

    The lookup session is closed before the endpoint runs, so a mutation
    holds a single pooled connection at a time.
    """
    if x_staff_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Staff-ID header")

    with provider.session_scope() as session:
        staff = StaffRepository(session).get_active(x_staff_id)
    if staff is None:
        raise HTTPException(status_code=401, detail="Unknown or inactive staff member")
    return staff


# Create FastAPI application
app = FastAPI(
    title=_config.api.title,
    description="Membership registration workflow: submission, review, assignment and audit",
    version=_config.api.version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)
app.state.hub = NotificationHub()
app.state.notification_queue_size = _config.notifications.queue_size

# Setup middleware
setup_cors(app, _config.api.cors_origins)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)

app.include_router(realtime_router)


@app.on_event("startup")
async def startup():
    """Configure logging and open the database pool on startup."""
    global _startup_time

    setup_logging(_config.logging)
    logger.info("Starting Membership Registration API...")

    try:
        provider = get_provider()
        if CREATE_TABLES:
            provider.create_tables()
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Membership Registration API...")
    get_db_provider().close()


PROTECTED_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key or staff identity"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    503: {"model": ErrorResponse, "description": "Data store unavailable"},
}


@app.get(
    f"{API_PREFIX}/applications",
    response_model=ApplicationListResponse,
    responses=PROTECTED_RESPONSES,
    dependencies=[Depends(verify_api_key)],
    summary="List applications",
)
def list_applications(
    status: Optional[ApplicationStatus] = Query(default=None),
    assigned_staff_id: Optional[int] = Query(default=None),
    payment_status: Optional[PaymentStatus] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=200),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    sort_by: Optional[str] = Query(default="created_at"),
    sort_order: Optional[str] = Query(default="DESC"),
    staff: StaffRecord = Depends(get_acting_staff),
    session: Session = Depends(get_session),
    config: ConfigManager = Depends(get_config_instance),
):
    """List applications with filters, sorting and pagination.

    Unknown sort columns fall back to created_at DESC.
    """
    spec = ApplicationFilter.build(
        status=status,
        assigned_staff_id=assigned_staff_id,
        payment_status=payment_status,
        search=search,
        page=page,
        limit=limit or config.applications.default_page_size,
        sort_by=sort_by,
        sort_order=sort_order,
        max_limit=config.applications.max_page_size,
    )
    result = ApplicationQueryService(session).list(spec)

    return ApplicationListResponse(
        applications=[ApplicationListEntry(**item.to_dict()) for item in result.items],
        pagination=PaginationResponse(**result.page.to_dict()),
    )


@app.get(
    f"{API_PREFIX}/applications/{{application_id}}",
    response_model=ApplicationWithDocuments,
    responses={**PROTECTED_RESPONSES, 404: {"model": ErrorResponse, "description": "Not found"}},
    dependencies=[Depends(verify_api_key)],
    summary="Get an application",
)
def get_application(
    application_id: int,
    staff: StaffRecord = Depends(get_acting_staff),
    session: Session = Depends(get_session),
):
    """Get one application with applicant, assigned staff and documents."""
    detail = ApplicationQueryService(session).get(application_id)
    if detail is None:
        raise NotFoundError(f"Application not found: {application_id}")

    return ApplicationWithDocuments(
        application=ApplicationDetailResponse(**detail.to_dict()),
        documents=[DocumentResponse(**d.to_dict()) for d in detail.documents],
    )


@app.post(
    f"{API_PREFIX}/applications",
    response_model=SubmissionResponse,
    status_code=201,
    responses={
        409: {"model": ErrorResponse, "description": "Concurrent duplicate applicant"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Submit an application",
)
def submit_application(
    request: ApplicationCreate,
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
):
    """Public submission from the registration portal."""
    result = service.submit(request.applicant_data(), request.payment_method)

    return SubmissionResponse(
        message="Application submitted successfully",
        application=ApplicationResponse(**result.application.to_dict()),
        applicant_id=result.applicant_id,
    )


@app.put(
    f"{API_PREFIX}/applications/{{application_id}}/status",
    response_model=MutationResponse,
    responses={**PROTECTED_RESPONSES, 404: {"model": ErrorResponse, "description": "Not found"}},
    dependencies=[Depends(verify_api_key)],
    summary="Change application status",
)
def update_status(
    application_id: int,
    request: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    staff: StaffRecord = Depends(get_acting_staff),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
    hub: NotificationHub = Depends(get_hub),
):
    """Change the status of an application and notify live viewers."""
    result = service.change_status(
        application_id,
        request.status,
        notes=request.notes,
        rejection_reason=request.rejection_reason,
        acting_staff=staff,
    )

    # Runs after the response is sent, outside the committed transaction
    background_tasks.add_task(hub.publish, result.event)

    return MutationResponse(
        message="Status updated successfully",
        application=ApplicationResponse(**result.application.to_dict()),
    )


@app.put(
    f"{API_PREFIX}/applications/{{application_id}}/assign",
    response_model=MutationResponse,
    responses={
        **PROTECTED_RESPONSES,
        400: {"model": ErrorResponse, "description": "Invalid staff member"},
        404: {"model": ErrorResponse, "description": "Not found"},
    },
    dependencies=[Depends(verify_api_key)],
    summary="Assign an application",
)
def assign_application(
    application_id: int,
    request: AssignRequest,
    staff: StaffRecord = Depends(get_acting_staff),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
):
    """Assign an application to an active staff member."""
    application = service.assign(application_id, request.staff_id, acting_staff=staff)

    return MutationResponse(
        message="Application assigned successfully",
        application=ApplicationResponse(**application.to_dict()),
    )


@app.get(
    f"{API_PREFIX}/applications/{{application_id}}/audit",
    response_model=AuditHistoryResponse,
    responses={**PROTECTED_RESPONSES, 404: {"model": ErrorResponse, "description": "Not found"}},
    dependencies=[Depends(verify_api_key)],
    summary="Audit history of an application",
)
def get_audit_history(
    application_id: int,
    staff: StaffRecord = Depends(get_acting_staff),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
):
    """Audit entries of an application, newest first."""
    entries = service.history(application_id)
    return AuditHistoryResponse(
        entries=[AuditEntryResponse(**e.to_dict()) for e in entries]
    )


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Service health. Always returns 200; database state is reported in the body."""
    provider = get_db_provider()
    database = "unavailable"
    latency = None

    if provider.initialized:
        status = check_health(provider.engine, provider.session_factory)
        database = "healthy" if status.healthy else "unhealthy"
        latency = round(status.latency_ms, 2)

    uptime = None
    if _startup_time:
        uptime = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        database=database,
        database_latency_ms=latency,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=config.api.version,
        uptime_seconds=uptime,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
