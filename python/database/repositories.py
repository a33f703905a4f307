"""
Repository Pattern for Membership Registration Database Operations

Provides clean data access layer with proper typing and error handling.
Every public method returns typed records from database.records; ORM rows
stay inside this module.

Repositories never commit. They flush so that generated ids and constraint
violations surface inside the caller's unit of work.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import Select, select, or_
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import IntegrityError

from database.models import (
    Applicant,
    Application,
    ApplicationStatus,
    AuditAction,
    AuditEntry,
    Document,
    PaymentMethod,
    PaymentStatus,
    Staff,
    StaffRole,
    normalize_email,
    normalize_fiscal_code,
)
from database.records import (
    ApplicantRecord,
    ApplicationRecord,
    AuditEntryRecord,
    DocumentRecord,
    StaffRecord,
)

logger = logging.getLogger(__name__)

# Profile fields overwritten when an existing applicant submits again
APPLICANT_PROFILE_FIELDS = (
    'full_name', 'phone', 'birth_date', 'address', 'city', 'postal_code'
)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Raised when a referenced application does not exist."""
    pass


class InvalidStaffError(RepositoryError):
    """Raised when an assignment targets a missing or inactive staff member."""
    pass


class DuplicateApplicantError(RepositoryError):
    """Raised when applicant creation hits the email / fiscal code uniqueness constraint."""
    pass


# ============================================
# APPLICANT REPOSITORY
# ============================================

class ApplicantRepository:
    """Repository for applicant operations."""

    def __init__(self, session: Session):
        self.session = session

    def _find_existing(self, email: str, fiscal_code: str) -> Optional[Applicant]:
        query = select(Applicant).where(
            or_(
                Applicant.email == email,
                Applicant.fiscal_code == fiscal_code
            )
        ).order_by(Applicant.id).limit(1).with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def find_or_create(self, applicant_data: Dict[str, Any]) -> Tuple[ApplicantRecord, bool]:
        """
        Find an applicant by email OR fiscal code, creating it when absent.

        An existing applicant gets its profile fields overwritten with the
        incoming data (last write wins); email and fiscal code are kept.

        Args:
            applicant_data: Dictionary with email, fiscal_code and profile fields

        Returns:
            Tuple of (applicant record, created flag)

        Raises:
            DuplicateApplicantError: If a concurrent insert claimed the email or fiscal code
        """
        email = normalize_email(applicant_data.get('email'))
        fiscal_code = normalize_fiscal_code(applicant_data.get('fiscal_code'))

        try:
            applicant = self._find_existing(email, fiscal_code)

            if applicant is not None:
                for key in APPLICANT_PROFILE_FIELDS:
                    if key in applicant_data:
                        setattr(applicant, key, applicant_data[key])
                self.session.flush()
                logger.debug(f"Updated existing applicant: {applicant.id}")
                return ApplicantRecord.from_model(applicant), False

            applicant = Applicant(
                email=email,
                fiscal_code=fiscal_code,
                **{k: applicant_data.get(k) for k in APPLICANT_PROFILE_FIELDS}
            )
            self.session.add(applicant)
            self.session.flush()

            logger.debug(f"Created applicant: {applicant.id}")
            return ApplicantRecord.from_model(applicant), True

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateApplicantError(
                f"Applicant already registered with this email or fiscal code: {e.orig}"
            )


# ============================================
# STAFF REPOSITORY
# ============================================

class StaffRepository:
    """Repository for staff operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        username: str,
        email: str,
        full_name: str,
        role: StaffRole = StaffRole.STAFF,
        is_active: bool = True
    ) -> StaffRecord:
        """Create a staff member (used for seeding and tests)."""
        staff = Staff(
            username=username,
            email=normalize_email(email),
            full_name=full_name,
            role=role,
            is_active=is_active
        )
        self.session.add(staff)
        self.session.flush()
        return StaffRecord.from_model(staff)

    def get_active(self, staff_id: int) -> Optional[StaffRecord]:
        """Get staff member by ID only if the account is active."""
        query = select(Staff).where(
            Staff.id == staff_id,
            Staff.is_active == True
        )
        staff = self.session.execute(query).scalar_one_or_none()
        return StaffRecord.from_model(staff) if staff else None


# ============================================
# APPLICATION REPOSITORY
# ============================================

class ApplicationRepository:
    """Repository for application rows."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        applicant_id: int,
        payment_method: Optional[PaymentMethod],
        payment_amount: Decimal,
        created_at: Optional[datetime] = None
    ) -> ApplicationRecord:
        """
        Create a new pending application.

        Args:
            applicant_id: Owning applicant
            payment_method: Chosen payment method
            payment_amount: Registration fee charged
            created_at: Submission time (defaults to now)

        Returns:
            Created ApplicationRecord
        """
        application = Application(
            applicant_id=applicant_id,
            status=ApplicationStatus.PENDING,
            payment_method=payment_method,
            payment_amount=payment_amount,
            payment_status=PaymentStatus.UNSET
        )
        if created_at is not None:
            application.created_at = created_at
            application.updated_at = created_at
        self.session.add(application)
        self.session.flush()

        logger.debug(f"Created application: {application.id} (applicant {applicant_id})")
        return ApplicationRecord.from_model(application)

    def get_by_id(self, application_id: int) -> Optional[ApplicationRecord]:
        """Get application by ID without locking."""
        application = self.session.get(Application, application_id)
        return ApplicationRecord.from_model(application) if application else None

    @staticmethod
    def locking_select(application_id: int) -> Select:
        """SELECT ... FOR UPDATE OF applications, refreshing any cached row."""
        return select(Application).where(
            Application.id == application_id
        ).with_for_update(of=Application).execution_options(populate_existing=True)

    def get_for_update(self, application_id: int) -> Optional[ApplicationRecord]:
        """
        Read an application and lock its row until the transaction ends.

        Concurrent writers on the same application wait here, so the
        returned state is the one the caller's update will overwrite.
        """
        application = self.session.execute(
            self.locking_select(application_id)
        ).scalar_one_or_none()
        return ApplicationRecord.from_model(application) if application else None

    def update(self, application_id: int, updates: Dict[str, Any]) -> ApplicationRecord:
        """
        Update an application.

        Args:
            application_id: ID of application to update
            updates: Dictionary of fields to update

        Returns:
            Updated ApplicationRecord

        Raises:
            NotFoundError: If application not found
        """
        application = self.session.get(Application, application_id)
        if not application:
            raise NotFoundError(f"Application not found: {application_id}")

        for key, value in updates.items():
            if hasattr(application, key):
                setattr(application, key, value)

        self.session.flush()
        return ApplicationRecord.from_model(application)


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Append-only access to the application audit log."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        application_id: int,
        action: AuditAction,
        staff_id: Optional[int] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        entity_type: str = "application",
        entity_id: Optional[int] = None,
        created_at: Optional[datetime] = None
    ) -> AuditEntryRecord:
        """
        Append an audit entry inside the caller's transaction.

        Args:
            application_id: Application the mutation applies to
            action: Type of mutation
            staff_id: Acting staff member (None for public submissions)
            old_value: Snapshot before the change
            new_value: Snapshot after the change
            entity_type: Type of the mutated entity
            entity_id: ID of the mutated entity (defaults to application_id)
            created_at: Timestamp of the mutation (defaults to now)

        Returns:
            Created AuditEntryRecord
        """
        entry = AuditEntry(
            application_id=application_id,
            staff_id=staff_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id if entity_id is not None else application_id,
            old_value=old_value,
            new_value=new_value
        )
        if created_at is not None:
            entry.created_at = created_at

        self.session.add(entry)
        self.session.flush()
        return AuditEntryRecord.from_model(entry)

    def list_for(self, application_id: int) -> List[AuditEntryRecord]:
        """
        List the audit history of an application, most recent first.

        Entries sharing a timestamp keep their insertion order (by id).
        """
        query = select(AuditEntry).where(
            AuditEntry.application_id == application_id
        ).order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())

        result = self.session.execute(query)
        return [AuditEntryRecord.from_model(e) for e in result.scalars().all()]


# ============================================
# DOCUMENT REPOSITORY
# ============================================

class DocumentRepository:
    """Read-only access to documents attached to applications."""

    def __init__(self, session: Session):
        self.session = session

    def list_for(self, application_id: int) -> List[DocumentRecord]:
        """List documents of an application, newest upload first."""
        query = select(Document).where(
            Document.application_id == application_id
        ).options(
            joinedload(Document.verifier)
        ).order_by(Document.uploaded_at.desc(), Document.id.desc())

        result = self.session.execute(query)
        return [DocumentRecord.from_model(d) for d in result.scalars().all()]
