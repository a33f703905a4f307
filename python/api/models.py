"""
Pydantic request/response schemas for the Membership Registration API

Request models validate input shape before it reaches the lifecycle engine;
response models mirror the typed records returned by the database layer.
"""

import re
from datetime import date, datetime
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from database.models import ApplicationStatus, PaymentMethod

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# ============================================
# REQUESTS
# ============================================

class ApplicationCreate(BaseModel):
    """Public submission of a membership application."""
    email: str = Field(..., max_length=255, description="Applicant email (dedup key)")
    fiscal_code: str = Field(
        ...,
        min_length=1,
        max_length=32,
        description="Fiscal identifier (dedup key)"
    )
    full_name: str = Field(..., min_length=2, max_length=200, description="Applicant full name")
    phone: Optional[str] = Field(default=None, max_length=30)
    birth_date: Optional[date] = Field(default=None, description="Date of birth (YYYY-MM-DD)")
    address: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=10)
    payment_method: Optional[PaymentMethod] = Field(
        default=None,
        description="cash, card, bank_transfer or paypal"
    )

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v

    @field_validator('fiscal_code', 'full_name')
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Must not be blank")
        return v.strip()

    def applicant_data(self) -> Dict[str, Any]:
        """Applicant fields as expected by the lifecycle engine."""
        return self.model_dump(exclude={'payment_method'})


class StatusUpdateRequest(BaseModel):
    """Status transition requested by a staff member."""
    status: ApplicationStatus
    notes: Optional[str] = Field(default=None, max_length=5000)
    rejection_reason: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode='after')
    def require_rejection_reason(self) -> 'StatusUpdateRequest':
        """A rejection must carry a non-empty reason."""
        if self.status == ApplicationStatus.REJECTED and not (self.rejection_reason or '').strip():
            raise ValueError("rejection_reason is required when status is rejected")
        return self


class AssignRequest(BaseModel):
    """Assignment of an application to a staff member."""
    staff_id: int = Field(..., ge=1)


# ============================================
# RESPONSES
# ============================================

class ApplicationResponse(BaseModel):
    """One application row."""
    id: int
    applicant_id: int
    status: str
    payment_status: str
    assigned_staff_id: Optional[int] = None
    payment_method: Optional[str] = None
    payment_amount: Optional[float] = None
    payment_reference: Optional[str] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    completion_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApplicationListEntry(ApplicationResponse):
    """Listing row: application plus applicant / staff summary and counts."""
    full_name: str
    email: str
    fiscal_code: str
    phone: Optional[str] = None
    city: Optional[str] = None
    staff_name: Optional[str] = None
    staff_username: Optional[str] = None
    unread_messages: int = 0
    documents_count: int = 0
    approved_documents: int = 0


class PaginationResponse(BaseModel):
    """Pagination metadata for listings."""
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool


class ApplicationListResponse(BaseModel):
    """Response schema for the application listing."""
    applications: List[ApplicationListEntry] = Field(default_factory=list)
    pagination: PaginationResponse


class ApplicantResponse(BaseModel):
    id: int
    email: str
    fiscal_code: str
    full_name: str
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class StaffSummary(BaseModel):
    id: int
    username: str
    email: str
    full_name: str
    role: str
    is_active: bool


class ApplicationDetailResponse(ApplicationResponse):
    """Single application with applicant and assigned staff."""
    applicant: ApplicantResponse
    assigned_staff: Optional[StaffSummary] = None


class DocumentResponse(BaseModel):
    id: int
    application_id: int
    document_type: str
    file_name: str
    is_approved: bool
    verified_by: Optional[int] = None
    verified_by_name: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class ApplicationWithDocuments(BaseModel):
    """Response schema for a single application fetch."""
    application: ApplicationDetailResponse
    documents: List[DocumentResponse] = Field(default_factory=list)


class SubmissionResponse(BaseModel):
    """Response schema for a public submission."""
    message: str
    application: ApplicationResponse
    applicant_id: int


class MutationResponse(BaseModel):
    """Response schema for status change and assignment."""
    message: str
    application: ApplicationResponse


class AuditEntryResponse(BaseModel):
    id: int
    application_id: int
    action: str
    entity_type: str
    entity_id: int
    staff_id: Optional[int] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class AuditHistoryResponse(BaseModel):
    """Audit history of an application, newest first."""
    entries: List[AuditEntryResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(..., description="healthy or unhealthy")
    database_latency_ms: Optional[float] = Field(default=None)
    timestamp: str = Field(..., description="Check timestamp (ISO 8601)")
    version: str = Field(..., description="API version")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
