"""
SQLAlchemy ORM Models for the Membership Registration Service

This module defines the relational schema for the tesseramento workflow:
- Normalized table design
- Indexes for the staff dashboard listing queries
- Append-only audit trail (guarded against updates and deletes)
- Timestamps for all mutable records (created_at, updated_at)

Tables:
1. applicants - People applying for membership (deduplicated by email / fiscal code)
2. staff - Internal reviewers
3. applications - Membership requests ("tesseramenti") and their lifecycle state
4. audit_log - Immutable history of every application mutation
5. documents - Files attached to an application (read-only for the core)
6. chat_messages - Applicant/staff conversation (read-only for the core)
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Date, Text, Numeric,
    ForeignKey, Index, Enum, JSON, event
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class ApplicationStatus(str, PyEnum):
    """Lifecycle status of an application"""
    PENDING = "pending"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    REJECTED = "rejected"


class PaymentMethod(str, PyEnum):
    """How the registration fee is paid"""
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"


class PaymentStatus(str, PyEnum):
    """Payment state, independent of the lifecycle status"""
    UNSET = "unset"
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class StaffRole(str, PyEnum):
    """Role of a staff member"""
    ADMIN = "admin"
    STAFF = "staff"


class AuditAction(str, PyEnum):
    """Type of audited mutation"""
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"


class SenderType(str, PyEnum):
    """Author side of a chat message"""
    USER = "user"
    STAFF = "staff"


def _enum_column(enum_cls, name: str) -> Enum:
    # Persist the lowercase values, not the member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# PEOPLE
# ============================================

class Applicant(Base, TimestampMixin):
    """
    A person applying for membership.

    Email and fiscal code are both unique and act as deduplication keys
    when a new application is submitted.
    """
    __tablename__ = "applicants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    fiscal_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    full_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    applications: Mapped[List["Application"]] = relationship(
        "Application",
        back_populates="applicant",
        lazy="select"
    )

    def __repr__(self) -> str:
        return f"<Applicant(id={self.id}, email='{self.email}')>"


class Staff(Base, TimestampMixin):
    """Internal reviewer. Only active staff can be assigned applications."""
    __tablename__ = "staff"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[StaffRole] = mapped_column(
        _enum_column(StaffRole, "staff_role"),
        nullable=False,
        default=StaffRole.STAFF
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    def __repr__(self) -> str:
        return f"<Staff(id={self.id}, username='{self.username}', active={self.is_active})>"


# ============================================
# APPLICATIONS
# ============================================

class Application(Base, TimestampMixin):
    """
    One membership request ("tesseramento").

    Mutated only by the lifecycle service; every mutation is paired with
    exactly one AuditEntry written in the same transaction.

    Invariants:
    - rejection_reason is set only while status == rejected
    - completion_date is stamped once, the first time status becomes
      completed, and is never cleared
    """
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    applicant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("applicants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    assigned_staff_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("staff.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    status: Mapped[ApplicationStatus] = mapped_column(
        _enum_column(ApplicationStatus, "application_status"),
        nullable=False,
        default=ApplicationStatus.PENDING,
        index=True
    )

    # Payment (independent of lifecycle status)
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        _enum_column(PaymentMethod, "payment_method"),
        nullable=True
    )
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.UNSET,
        index=True
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completion_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    applicant: Mapped["Applicant"] = relationship(
        "Applicant",
        back_populates="applications",
        lazy="select"
    )
    assigned_staff: Mapped[Optional["Staff"]] = relationship(
        "Staff",
        lazy="select"
    )
    documents: Mapped[List["Document"]] = relationship(
        "Document",
        back_populates="application",
        order_by="Document.uploaded_at.desc()",
        lazy="select"
    )
    audit_entries: Mapped[List["AuditEntry"]] = relationship(
        "AuditEntry",
        back_populates="application",
        lazy="dynamic"
    )

    __table_args__ = (
        Index('ix_application_status_created', 'status', 'created_at'),
        Index('ix_application_staff_status', 'assigned_staff_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Application(id={self.id}, status={self.status}, applicant_id={self.applicant_id})>"


# ============================================
# AUDIT
# ============================================

class AuditEntry(Base):
    """
    Immutable history of application mutations.

    One row per mutation, ordered by created_at and then by id.
    Updates and deletes are refused at flush time.
    """
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    application_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("applications.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    # Null for public submissions
    staff_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("staff.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(
        _enum_column(AuditAction, "audit_action"),
        nullable=False,
        index=True
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, default="application")
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)

    old_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # No updated_at - audit rows are immutable
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    application: Mapped["Application"] = relationship(
        "Application",
        back_populates="audit_entries"
    )

    __table_args__ = (
        Index('ix_audit_application_created', 'application_id', 'created_at', 'id'),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, application_id={self.application_id}, action={self.action})>"


class ImmutableAuditEntryError(Exception):
    """Raised when code attempts to modify or delete an audit entry."""
    pass


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ImmutableAuditEntryError(f"Audit entry {target.id} is immutable")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ImmutableAuditEntryError(f"Audit entry {target.id} cannot be deleted")


# ============================================
# READ-ONLY COLLABORATORS
# ============================================

class Document(Base):
    """File metadata attached to an application."""
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("staff.id", ondelete="SET NULL"),
        nullable=True
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    application: Mapped["Application"] = relationship(
        "Application",
        back_populates="documents"
    )
    verifier: Mapped[Optional["Staff"]] = relationship("Staff", lazy="select")

    __table_args__ = (
        Index('ix_document_application_approved', 'application_id', 'is_approved'),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, application_id={self.application_id}, approved={self.is_approved})>"


class ChatMessage(Base):
    """Message exchanged between applicant and staff about an application."""
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sender_type: Mapped[SenderType] = mapped_column(
        _enum_column(SenderType, "sender_type"),
        nullable=False
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index('ix_chat_unread', 'application_id', 'sender_type', 'is_read'),
    )

    def __repr__(self) -> str:
        return f"<ChatMessage(id={self.id}, application_id={self.application_id}, sender={self.sender_type})>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_email(email: Optional[str]) -> str:
    """
    Normalize an email address for storage and deduplication.

    Args:
        email: Raw email (can be None)

    Returns:
        Lowercased, trimmed email, or empty string if email is None/empty
    """
    if not email:
        return ""
    return email.strip().lower()


def normalize_fiscal_code(fiscal_code: Optional[str]) -> str:
    """
    Normalize a fiscal code for storage and deduplication.

    Removes spaces and separators and converts to uppercase.

    Args:
        fiscal_code: Raw fiscal code (can be None)

    Returns:
        Normalized fiscal code, or empty string if fiscal_code is None/empty
    """
    if not fiscal_code:
        return ""
    return re.sub(r'[\s\-\.]', '', fiscal_code).upper()
