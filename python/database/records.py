"""
Typed records returned by the persistence layer.

ORM rows never leave the repositories: each query result is mapped to one of
these frozen dataclasses right after it is read. The records carry plain
values only (no lazy relationships), so they are safe to hand to the HTTP
layer after the session has been closed.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from database.models import (
    Applicant,
    Application,
    AuditEntry,
    Document,
    Staff,
)


def _value(enum_or_none):
    return enum_or_none.value if enum_or_none is not None else None


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert dates, decimals and nested values to JSON-friendly types."""
    result = {}
    for key, value in data.items():
        if isinstance(value, (datetime, date)):
            result[key] = value.isoformat()
        elif isinstance(value, Decimal):
            result[key] = float(value)
        elif isinstance(value, dict):
            result[key] = _jsonable(value)
        elif isinstance(value, list):
            result[key] = [_jsonable(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class ApplicantRecord:
    """Identity and contact details of an applicant."""
    id: int
    email: str
    fiscal_code: str
    full_name: str
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Applicant) -> "ApplicantRecord":
        return cls(
            id=row.id,
            email=row.email,
            fiscal_code=row.fiscal_code,
            full_name=row.full_name,
            phone=row.phone,
            birth_date=row.birth_date,
            address=row.address,
            city=row.city,
            postal_code=row.postal_code,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class StaffRecord:
    """A reviewer, as seen by the lifecycle and query services."""
    id: int
    username: str
    email: str
    full_name: str
    role: str
    is_active: bool

    @classmethod
    def from_model(cls, row: Staff) -> "StaffRecord":
        return cls(
            id=row.id,
            username=row.username,
            email=row.email,
            full_name=row.full_name,
            role=_value(row.role),
            is_active=row.is_active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ApplicationRecord:
    """Full state of one application row."""
    id: int
    applicant_id: int
    status: str
    payment_status: str
    assigned_staff_id: Optional[int] = None
    payment_method: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_reference: Optional[str] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    completion_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Application) -> "ApplicationRecord":
        return cls(
            id=row.id,
            applicant_id=row.applicant_id,
            status=_value(row.status),
            payment_status=_value(row.payment_status),
            assigned_staff_id=row.assigned_staff_id,
            payment_method=_value(row.payment_method),
            payment_amount=row.payment_amount,
            payment_reference=row.payment_reference,
            payment_date=row.payment_date,
            notes=row.notes,
            rejection_reason=row.rejection_reason,
            completion_date=row.completion_date,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class AuditEntryRecord:
    """One immutable audit log row."""
    id: int
    application_id: int
    action: str
    entity_type: str
    entity_id: int
    staff_id: Optional[int] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: AuditEntry) -> "AuditEntryRecord":
        return cls(
            id=row.id,
            application_id=row.application_id,
            action=_value(row.action),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            staff_id=row.staff_id,
            old_value=row.old_value,
            new_value=row.new_value,
            created_at=row.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class DocumentRecord:
    """Metadata of a document attached to an application."""
    id: int
    application_id: int
    document_type: str
    file_name: str
    is_approved: bool
    verified_by: Optional[int] = None
    verified_by_name: Optional[str] = None
    uploaded_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: Document) -> "DocumentRecord":
        return cls(
            id=row.id,
            application_id=row.application_id,
            document_type=row.document_type,
            file_name=row.file_name,
            is_approved=row.is_approved,
            verified_by=row.verified_by,
            verified_by_name=row.verifier.full_name if row.verifier else None,
            uploaded_at=row.uploaded_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


# ============================================
# QUERY PROJECTIONS
# ============================================

@dataclass(frozen=True)
class ApplicationListItem:
    """One row of the staff dashboard listing."""
    application: ApplicationRecord
    applicant_full_name: str
    applicant_email: str
    applicant_fiscal_code: str
    applicant_phone: Optional[str]
    applicant_city: Optional[str]
    staff_full_name: Optional[str]
    staff_username: Optional[str]
    unread_messages: int
    documents_count: int
    approved_documents: int

    def to_dict(self) -> Dict[str, Any]:
        data = self.application.to_dict()
        data.update({
            "full_name": self.applicant_full_name,
            "email": self.applicant_email,
            "fiscal_code": self.applicant_fiscal_code,
            "phone": self.applicant_phone,
            "city": self.applicant_city,
            "staff_name": self.staff_full_name,
            "staff_username": self.staff_username,
            "unread_messages": self.unread_messages,
            "documents_count": self.documents_count,
            "approved_documents": self.approved_documents,
        })
        return data


@dataclass(frozen=True)
class ApplicationDetail:
    """Single application with applicant, assigned staff and documents."""
    application: ApplicationRecord
    applicant: ApplicantRecord
    assigned_staff: Optional[StaffRecord] = None
    documents: List[DocumentRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.application.to_dict()
        data["applicant"] = self.applicant.to_dict()
        data["assigned_staff"] = self.assigned_staff.to_dict() if self.assigned_staff else None
        return data


@dataclass(frozen=True)
class Page:
    """Pagination metadata computed from the full matching set."""
    current_page: int
    items_per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return -(-self.total_items // self.items_per_page)

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.current_page > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "total_items": self.total_items,
            "items_per_page": self.items_per_page,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


@dataclass(frozen=True)
class ApplicationPage:
    """A page of listing items plus its pagination metadata."""
    items: List[ApplicationListItem]
    page: Page
