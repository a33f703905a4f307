"""
Application Lifecycle Service

Applies every mutation of an application together with its audit entry in a
single unit of work:

- submit: find-or-create the applicant, create a pending application,
  record a `created` audit entry
- change_status: lock the row, apply the status rules, record a
  `status_changed` audit entry, return a status_updated event
- assign: validate the target staff member, set the assignment, record an
  `assigned` audit entry

The service never publishes notifications itself. change_status returns the
committed event and the transport layer hands it to the NotificationHub, so
a failing or slow subscriber can never hold a transaction open.

Usage:
    service = ApplicationLifecycleService(provider, registration_fee=Decimal("50.00"))
    result = service.change_status(42, "in_review", acting_staff=staff)
    hub.publish(result.event)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from database.connection import DatabaseSessionProvider
from database.models import (
    ApplicationStatus,
    AuditAction,
    PaymentMethod,
    utcnow,
)
from database.records import ApplicationRecord, AuditEntryRecord, StaffRecord
from database.repositories import (
    ApplicantRepository,
    ApplicationRepository,
    AuditRepository,
    InvalidStaffError,
    NotFoundError,
    StaffRepository,
)
from notifications import StatusUpdatedEvent

logger = logging.getLogger(__name__)

DEFAULT_REGISTRATION_FEE = Decimal("50.00")


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a public submission."""
    application: ApplicationRecord
    applicant_id: int
    applicant_created: bool


@dataclass(frozen=True)
class StatusChangeResult:
    """Committed status change and the event to fan out."""
    application: ApplicationRecord
    event: StatusUpdatedEvent


class ApplicationLifecycleService:
    """
    Enforces the application lifecycle rules.

    Each public method runs as one all-or-nothing transaction obtained from
    the provider: on any exception the unit of work rolls back and the
    session is released before the error propagates.
    """

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        registration_fee: Decimal = DEFAULT_REGISTRATION_FEE,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the lifecycle service.

        Args:
            provider: Database session provider owning the connection pool
            registration_fee: Amount charged on every new application
            clock: Source of transition timestamps
        """
        self._provider = provider
        self._registration_fee = Decimal(registration_fee)
        self._clock = clock

    def submit(
        self,
        applicant_data: Dict[str, Any],
        payment_method: Optional[Union[str, PaymentMethod]]
    ) -> SubmissionResult:
        """
        Register a new membership application.

        The applicant is matched by email OR fiscal code. A match has its
        profile overwritten; otherwise a new applicant is created. A new
        application is always created.

        Raises:
            DuplicateApplicantError: On a uniqueness race for email / fiscal code
        """
        method = PaymentMethod(payment_method) if payment_method else None
        now = self._clock()

        with self._provider.get_unit_of_work() as uow:
            applicant, created = ApplicantRepository(uow.session).find_or_create(applicant_data)

            application = ApplicationRepository(uow.session).create(
                applicant_id=applicant.id,
                payment_method=method,
                payment_amount=self._registration_fee,
                created_at=now
            )

            AuditRepository(uow.session).append(
                application_id=application.id,
                action=AuditAction.CREATED,
                new_value=application.to_dict(),
                created_at=now
            )
            uow.commit()

        logger.info(
            "Application submitted: id=%d applicant_id=%d new_applicant=%s",
            application.id,
            applicant.id,
            created,
        )
        return SubmissionResult(
            application=application,
            applicant_id=applicant.id,
            applicant_created=created
        )

    def change_status(
        self,
        application_id: int,
        new_status: Union[str, ApplicationStatus],
        notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        acting_staff: Optional[StaffRecord] = None
    ) -> StatusChangeResult:
        """
        Move an application to a new status.

        Rules:
        - completed stamps completion_date the first time only
        - rejected stores the given rejection_reason as is
        - any other status clears rejection_reason
        - notes are replaced only by a non-empty value

        Raises:
            NotFoundError: If the application does not exist
        """
        status = ApplicationStatus(new_status)
        now = self._clock()

        with self._provider.get_unit_of_work() as uow:
            applications = ApplicationRepository(uow.session)

            # Diff against the row as locked by this transaction
            current = applications.get_for_update(application_id)
            if current is None:
                raise NotFoundError(f"Application not found: {application_id}")

            updates: Dict[str, Any] = {
                'status': status,
                'notes': notes if notes else current.notes,
                'rejection_reason': rejection_reason if status == ApplicationStatus.REJECTED else None,
                'updated_at': now,
            }
            if status == ApplicationStatus.COMPLETED and current.completion_date is None:
                updates['completion_date'] = now

            updated = applications.update(application_id, updates)

            AuditRepository(uow.session).append(
                application_id=application_id,
                action=AuditAction.STATUS_CHANGED,
                staff_id=acting_staff.id if acting_staff else None,
                old_value={'status': current.status},
                new_value={
                    'status': status.value,
                    'notes': notes,
                    'rejection_reason': rejection_reason,
                },
                created_at=now
            )
            uow.commit()

        logger.info(
            "Application %d status %s -> %s by staff %s",
            application_id,
            current.status,
            status.value,
            acting_staff.username if acting_staff else "-",
        )

        event = StatusUpdatedEvent(
            application_id=application_id,
            new_status=status.value,
            updated_by=acting_staff.full_name if acting_staff else None,
            timestamp=now
        )
        return StatusChangeResult(application=updated, event=event)

    def assign(
        self,
        application_id: int,
        staff_id: int,
        acting_staff: Optional[StaffRecord] = None
    ) -> ApplicationRecord:
        """
        Assign an application to an active staff member.

        Raises:
            InvalidStaffError: If the target staff member is missing or inactive
            NotFoundError: If the application does not exist
        """
        now = self._clock()

        with self._provider.get_unit_of_work() as uow:
            target = StaffRepository(uow.session).get_active(staff_id)
            if target is None:
                raise InvalidStaffError(f"Staff member not found or inactive: {staff_id}")

            applications = ApplicationRepository(uow.session)
            current = applications.get_for_update(application_id)
            if current is None:
                raise NotFoundError(f"Application not found: {application_id}")

            updated = applications.update(application_id, {
                'assigned_staff_id': target.id,
                'updated_at': now,
            })

            AuditRepository(uow.session).append(
                application_id=application_id,
                action=AuditAction.ASSIGNED,
                staff_id=acting_staff.id if acting_staff else None,
                old_value={'assigned_to': current.assigned_staff_id},
                new_value={
                    'assigned_to': target.id,
                    'assigned_by': acting_staff.id if acting_staff else None,
                },
                created_at=now
            )
            uow.commit()

        logger.info(
            "Application %d assigned to %s by staff %s",
            application_id,
            target.username,
            acting_staff.username if acting_staff else "-",
        )
        return updated

    def history(self, application_id: int) -> List[AuditEntryRecord]:
        """
        Audit history of an application, most recent first.

        Raises:
            NotFoundError: If the application does not exist
        """
        with self._provider.get_unit_of_work() as uow:
            if ApplicationRepository(uow.session).get_by_id(application_id) is None:
                raise NotFoundError(f"Application not found: {application_id}")
            return AuditRepository(uow.session).list_for(application_id)
