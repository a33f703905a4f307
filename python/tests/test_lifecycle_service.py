"""
Tests for the application lifecycle engine.

Covers submission with applicant deduplication, status transitions and
their side rules, assignment, audit trail consistency and transactional
rollback.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from conftest import as_naive_utc, count_rows
from database.lifecycle_service import ApplicationLifecycleService
from database.models import (
    Applicant,
    Application,
    ApplicationStatus,
    AuditEntry,
    ImmutableAuditEntryError,
)
from database.repositories import (
    ApplicantRepository,
    ApplicationRepository,
    DuplicateApplicantError,
    InvalidStaffError,
    NotFoundError,
)


@pytest.fixture
def service(provider, clock):
    return ApplicationLifecycleService(provider, clock=clock)


@pytest.fixture
def submitted(service, applicant_data):
    """A freshly submitted application."""
    return service.submit(applicant_data(), "bank_transfer").application


def audit_entries(provider, application_id):
    with provider.session_scope() as session:
        rows = session.execute(
            select(AuditEntry).where(AuditEntry.application_id == application_id).order_by(AuditEntry.id)
        ).scalars().all()
        return [(r.action.value, r.staff_id, r.old_value, r.new_value) for r in rows]


def load_application(provider, application_id):
    with provider.session_scope() as session:
        return session.get(Application, application_id)


# ============================================
# SUBMISSION
# ============================================

class TestSubmit:
    """Tests for public submission."""

    def test_new_applicant_creates_one_of_each(self, service, provider, applicant_data):
        """Unseen email and fiscal code create applicant, application and one audit entry."""
        result = service.submit(applicant_data(), "cash")

        assert result.applicant_created is True
        assert result.application.status == "pending"
        assert result.application.payment_status == "unset"
        assert result.application.payment_method == "cash"
        assert result.application.payment_amount == Decimal("50.00")

        assert count_rows(provider, Applicant) == 1
        assert count_rows(provider, Application) == 1

        entries = audit_entries(provider, result.application.id)
        assert len(entries) == 1
        action, staff_id, old_value, new_value = entries[0]
        assert action == "created"
        assert staff_id is None
        assert old_value is None
        assert new_value["status"] == "pending"
        assert new_value["applicant_id"] == result.applicant_id
        assert new_value["payment_amount"] == 50.0

    def test_email_and_fiscal_code_are_normalized(self, service, provider, applicant_data):
        """Dedup keys are stored in canonical form."""
        result = service.submit(applicant_data(email="  A@X.com ", fiscal_code="abc-12 3"), None)

        with provider.session_scope() as session:
            applicant = session.get(Applicant, result.applicant_id)
            assert applicant.email == "a@x.com"
            assert applicant.fiscal_code == "ABC123"

    def test_matching_email_reuses_applicant(self, service, provider, applicant_data):
        """A known email updates the profile and still creates a new application."""
        first = service.submit(applicant_data(), "cash")
        second = service.submit(
            applicant_data(fiscal_code="OTHER999", full_name="Giulia Neri Rossi", city="Modena"),
            "card"
        )

        assert second.applicant_created is False
        assert second.applicant_id == first.applicant_id
        assert second.application.id != first.application.id
        assert count_rows(provider, Applicant) == 1
        assert count_rows(provider, Application) == 2

        with provider.session_scope() as session:
            applicant = session.get(Applicant, first.applicant_id)
            assert applicant.full_name == "Giulia Neri Rossi"
            assert applicant.city == "Modena"
            # Dedup keys of an existing applicant are never rewritten
            assert applicant.fiscal_code == "ABC123"

        created = [e for e in audit_entries(provider, second.application.id) if e[0] == "created"]
        assert len(created) == 1

    def test_matching_fiscal_code_reuses_applicant(self, service, provider, applicant_data):
        """A known fiscal code matches even with a different email."""
        first = service.submit(applicant_data(), None)
        second = service.submit(applicant_data(email="other@x.com"), None)

        assert second.applicant_id == first.applicant_id
        assert count_rows(provider, Applicant) == 1

        with provider.session_scope() as session:
            assert session.get(Applicant, first.applicant_id).email == "a@x.com"

    def test_resubmission_with_pending_application_creates_another(self, service, provider, applicant_data):
        """An applicant may hold several pending applications."""
        service.submit(applicant_data(), None)
        service.submit(applicant_data(), None)

        with provider.session_scope() as session:
            statuses = session.execute(select(Application.status)).scalars().all()
        assert statuses == [ApplicationStatus.PENDING, ApplicationStatus.PENDING]

    def test_configured_registration_fee(self, provider, applicant_data):
        """The fee comes from the service configuration."""
        service = ApplicationLifecycleService(provider, registration_fee=Decimal("35.50"))
        result = service.submit(applicant_data(), None)
        assert result.application.payment_amount == Decimal("35.50")

    def test_invalid_payment_method_rejected(self, service, provider, applicant_data):
        """Unknown payment methods never reach the store."""
        with pytest.raises(ValueError):
            service.submit(applicant_data(), "bitcoin")
        assert count_rows(provider, Application) == 0

    def test_audit_failure_rolls_back_everything(self, service, provider, applicant_data):
        """Applicant, application and audit entry commit together or not at all."""
        with patch(
            "database.lifecycle_service.AuditRepository.append",
            side_effect=SQLAlchemyError("audit insert failed")
        ):
            with pytest.raises(SQLAlchemyError):
                service.submit(applicant_data(), "cash")

        assert count_rows(provider, Applicant) == 0
        assert count_rows(provider, Application) == 0
        assert count_rows(provider, AuditEntry) == 0

    def test_uniqueness_race_raises_duplicate(self, service, provider, applicant_data):
        """A concurrent insert of the same applicant surfaces as DuplicateApplicantError."""
        service.submit(applicant_data(), None)

        # Simulate the race: the lookup misses the row another transaction committed
        with patch.object(ApplicantRepository, "_find_existing", return_value=None):
            with pytest.raises(DuplicateApplicantError):
                service.submit(applicant_data(), None)

        assert count_rows(provider, Applicant) == 1
        assert count_rows(provider, Application) == 1


# ============================================
# STATUS TRANSITIONS
# ============================================

class TestChangeStatus:
    """Tests for status transitions."""

    def test_in_review_writes_one_audit_entry(self, service, provider, submitted, reviewer):
        """A transition records the locked old status and the new values."""
        result = service.change_status(submitted.id, "in_review", acting_staff=reviewer)

        assert result.application.status == "in_review"
        assert result.application.rejection_reason is None

        entries = audit_entries(provider, submitted.id)
        assert [e[0] for e in entries] == ["created", "status_changed"]
        _, staff_id, old_value, new_value = entries[1]
        assert staff_id == reviewer.id
        assert old_value == {"status": "pending"}
        assert new_value == {"status": "in_review", "notes": None, "rejection_reason": None}

    def test_old_value_tracks_each_transition(self, service, provider, submitted, reviewer):
        """Every audit old-value matches the status the row had before that call."""
        for status in ("in_review", "completed", "in_review"):
            service.change_status(submitted.id, status, acting_staff=reviewer)

        changes = [e for e in audit_entries(provider, submitted.id) if e[0] == "status_changed"]
        assert [c[2]["status"] for c in changes] == ["pending", "in_review", "completed"]
        assert [c[3]["status"] for c in changes] == ["in_review", "completed", "in_review"]

    def test_rejected_stores_reason(self, service, submitted, reviewer):
        result = service.change_status(
            submitted.id, "rejected", rejection_reason="incomplete documents", acting_staff=reviewer
        )
        assert result.application.status == "rejected"
        assert result.application.rejection_reason == "incomplete documents"

    def test_rejected_with_null_reason_stores_null(self, service, submitted, reviewer):
        """The engine does not infer a reason."""
        result = service.change_status(submitted.id, "rejected", acting_staff=reviewer)
        assert result.application.rejection_reason is None

    def test_other_status_clears_reason(self, service, provider, submitted, reviewer):
        service.change_status(submitted.id, "rejected", rejection_reason="missing ID", acting_staff=reviewer)
        result = service.change_status(submitted.id, "in_review", acting_staff=reviewer)

        assert result.application.rejection_reason is None
        assert load_application(provider, submitted.id).rejection_reason is None

    def test_reason_ignored_for_non_rejected_status(self, service, submitted, reviewer):
        result = service.change_status(
            submitted.id, "in_review", rejection_reason="stray", acting_staff=reviewer
        )
        assert result.application.rejection_reason is None

    def test_completed_stamps_completion_date_once(self, service, provider, submitted, reviewer, clock):
        """completion_date is the first completion time and survives later transitions."""
        completed_at = clock.advance(hours=1)
        result = service.change_status(submitted.id, "completed", acting_staff=reviewer)
        assert as_naive_utc(result.application.completion_date) == as_naive_utc(completed_at)

        clock.advance(hours=1)
        service.change_status(submitted.id, "in_review", acting_staff=reviewer)
        clock.advance(hours=1)
        again = service.change_status(submitted.id, "completed", acting_staff=reviewer)

        assert as_naive_utc(again.application.completion_date) == as_naive_utc(completed_at)
        stored = load_application(provider, submitted.id)
        assert as_naive_utc(stored.completion_date) == as_naive_utc(completed_at)

    def test_pending_application_has_no_completion_date(self, submitted):
        assert submitted.completion_date is None

    def test_notes_replaced_only_by_non_empty_value(self, service, submitted, reviewer):
        service.change_status(submitted.id, "in_review", notes="called applicant", acting_staff=reviewer)

        kept = service.change_status(submitted.id, "in_review", notes="", acting_staff=reviewer)
        assert kept.application.notes == "called applicant"

        kept = service.change_status(submitted.id, "in_review", acting_staff=reviewer)
        assert kept.application.notes == "called applicant"

        replaced = service.change_status(submitted.id, "in_review", notes="docs received", acting_staff=reviewer)
        assert replaced.application.notes == "docs received"

    def test_updated_at_refreshed(self, service, submitted, reviewer, clock):
        moment = clock.advance(minutes=5)
        result = service.change_status(submitted.id, "in_review", acting_staff=reviewer)
        assert as_naive_utc(result.application.updated_at) == as_naive_utc(moment)

    def test_event_describes_committed_transition(self, service, submitted, reviewer, clock):
        result = service.change_status(submitted.id, "in_review", acting_staff=reviewer)

        assert result.event.application_id == submitted.id
        assert result.event.new_status == "in_review"
        assert result.event.updated_by == "Anna Verdi"
        assert result.event.timestamp == clock.now
        assert result.event.topic == f"application_{submitted.id}"

    def test_unknown_application_raises_not_found(self, service, provider, reviewer):
        with pytest.raises(NotFoundError):
            service.change_status(9999, "in_review", acting_staff=reviewer)
        assert count_rows(provider, AuditEntry) == 0

    def test_unknown_status_rejected(self, service, provider, submitted, reviewer):
        with pytest.raises(ValueError):
            service.change_status(submitted.id, "archived", acting_staff=reviewer)
        assert load_application(provider, submitted.id).status == ApplicationStatus.PENDING

    def test_audit_failure_leaves_row_untouched(self, service, provider, submitted, reviewer):
        with patch(
            "database.lifecycle_service.AuditRepository.append",
            side_effect=SQLAlchemyError("audit insert failed")
        ):
            with pytest.raises(SQLAlchemyError):
                service.change_status(submitted.id, "rejected", rejection_reason="x", acting_staff=reviewer)

        stored = load_application(provider, submitted.id)
        assert stored.status == ApplicationStatus.PENDING
        assert stored.rejection_reason is None
        assert len(audit_entries(provider, submitted.id)) == 1


# ============================================
# ROW LOCKING
# ============================================

def set_status_elsewhere(provider, application_id, status):
    """Commit a status change from an unrelated session."""
    with provider.session_scope() as session:
        session.get(Application, application_id).status = status


class TestRowLocking:
    """Tests for the locked read that feeds the audit old-value."""

    def test_lock_statement_locks_application_row(self):
        statement = ApplicationRepository.locking_select(42)
        sql = str(statement.compile(dialect=postgresql.dialect()))

        assert "FOR UPDATE OF applications" in sql
        assert statement.get_execution_options()["populate_existing"] is True

    def test_locked_read_refreshes_cached_row(self, provider, submitted):
        """A row already loaded in the session is re-read, not served from the identity map."""
        session = provider.session_factory()
        try:
            assert session.get(Application, submitted.id).status == ApplicationStatus.PENDING

            set_status_elsewhere(provider, submitted.id, ApplicationStatus.IN_REVIEW)

            locked = ApplicationRepository(session).get_for_update(submitted.id)
            assert locked.status == "in_review"
        finally:
            session.close()

    def test_status_old_value_is_read_inside_transaction(self, service, provider, submitted, reviewer):
        """A change committed after an earlier read is what the audit entry records."""
        assert load_application(provider, submitted.id).status == ApplicationStatus.PENDING
        set_status_elsewhere(provider, submitted.id, ApplicationStatus.IN_REVIEW)

        service.change_status(submitted.id, "completed", acting_staff=reviewer)

        _, _, old_value, new_value = audit_entries(provider, submitted.id)[-1]
        assert old_value == {"status": "in_review"}
        assert new_value["status"] == "completed"

    def test_assign_old_value_is_read_inside_transaction(self, service, provider, submitted, reviewer, colleague):
        assert load_application(provider, submitted.id).assigned_staff_id is None
        with provider.session_scope() as session:
            session.get(Application, submitted.id).assigned_staff_id = reviewer.id

        service.assign(submitted.id, colleague.id, acting_staff=reviewer)

        _, _, old_value, new_value = audit_entries(provider, submitted.id)[-1]
        assert old_value == {"assigned_to": reviewer.id}
        assert new_value == {"assigned_to": colleague.id, "assigned_by": reviewer.id}


# ============================================
# ASSIGNMENT
# ============================================

class TestAssign:
    """Tests for staff assignment."""

    def test_assign_to_active_staff(self, service, provider, submitted, reviewer, colleague):
        application = service.assign(submitted.id, colleague.id, acting_staff=reviewer)

        assert application.assigned_staff_id == colleague.id
        _, staff_id, old_value, new_value = audit_entries(provider, submitted.id)[-1]
        assert staff_id == reviewer.id
        assert old_value == {"assigned_to": None}
        assert new_value == {"assigned_to": colleague.id, "assigned_by": reviewer.id}

    def test_reassignment_records_previous_staff(self, service, provider, submitted, reviewer, colleague):
        service.assign(submitted.id, colleague.id, acting_staff=reviewer)
        service.assign(submitted.id, reviewer.id, acting_staff=reviewer)

        _, _, old_value, new_value = audit_entries(provider, submitted.id)[-1]
        assert old_value == {"assigned_to": colleague.id}
        assert new_value["assigned_to"] == reviewer.id

    def test_inactive_staff_rejected_without_side_effects(
        self, service, provider, submitted, reviewer, inactive_staff
    ):
        with pytest.raises(InvalidStaffError):
            service.assign(submitted.id, inactive_staff.id, acting_staff=reviewer)

        assert load_application(provider, submitted.id).assigned_staff_id is None
        assert [e[0] for e in audit_entries(provider, submitted.id)] == ["created"]

    def test_nonexistent_staff_rejected(self, service, provider, submitted, reviewer):
        with pytest.raises(InvalidStaffError):
            service.assign(submitted.id, 4242, acting_staff=reviewer)
        assert len(audit_entries(provider, submitted.id)) == 1

    def test_unknown_application_raises_not_found(self, service, provider, reviewer, colleague):
        with pytest.raises(NotFoundError):
            service.assign(9999, colleague.id, acting_staff=reviewer)
        assert count_rows(provider, AuditEntry) == 0


# ============================================
# AUDIT HISTORY
# ============================================

class TestHistory:
    """Tests for audit history and immutability."""

    def test_history_newest_first(self, service, submitted, reviewer, colleague, clock):
        clock.advance(minutes=1)
        service.change_status(submitted.id, "in_review", acting_staff=reviewer)
        clock.advance(minutes=1)
        service.assign(submitted.id, colleague.id, acting_staff=reviewer)

        history = service.history(submitted.id)
        assert [e.action for e in history] == ["assigned", "status_changed", "created"]

    def test_same_timestamp_keeps_insertion_order(self, service, submitted, reviewer):
        """Entries sharing a timestamp are ordered by id, newest first."""
        service.change_status(submitted.id, "in_review", acting_staff=reviewer)
        service.change_status(submitted.id, "completed", acting_staff=reviewer)

        history = service.history(submitted.id)
        changes = [e for e in history if e.action == "status_changed"]
        assert [c.new_value["status"] for c in changes] == ["completed", "in_review"]
        assert changes[0].id > changes[1].id

    def test_history_of_unknown_application(self, service):
        with pytest.raises(NotFoundError):
            service.history(9999)

    def test_audit_entries_cannot_be_updated(self, provider, submitted):
        with pytest.raises(ImmutableAuditEntryError):
            with provider.session_scope() as session:
                entry = session.execute(select(AuditEntry)).scalars().first()
                entry.new_value = {"status": "completed"}

    def test_audit_entries_cannot_be_deleted(self, provider, submitted):
        with pytest.raises(ImmutableAuditEntryError):
            with provider.session_scope() as session:
                entry = session.execute(select(AuditEntry)).scalars().first()
                session.delete(entry)

        assert count_rows(provider, AuditEntry) == 1


# ============================================
# END-TO-END SCENARIO
# ============================================

class TestReviewScenario:
    """Submit, review and reject one application."""

    def test_submit_review_reject(self, service, provider, reviewer):
        from notifications import NotificationHub

        hub = NotificationHub()
        received = []

        submitted = service.submit({"email": "a@x.com", "fiscal_code": "ABC123", "full_name": "A X"}, None)
        assert submitted.application.status == "pending"

        hub.subscribe(submitted.application.id, received.append)

        review = service.change_status(submitted.application.id, "in_review", acting_staff=reviewer)
        assert review.application.status == "in_review"
        assert review.application.rejection_reason is None
        assert [e.action for e in service.history(submitted.application.id)].count("status_changed") == 1

        rejection = service.change_status(
            submitted.application.id, "rejected", None, "incomplete documents", acting_staff=reviewer
        )
        assert rejection.application.status == "rejected"
        assert rejection.application.rejection_reason == "incomplete documents"
        assert [e.action for e in service.history(submitted.application.id)].count("status_changed") == 2

        # Published only after the change has committed
        assert received == []
        assert hub.publish(rejection.event) == 1
        assert received[0]["event"] == "status_updated"
        assert received[0]["data"]["newStatus"] == "rejected"
        assert received[0]["data"]["applicationId"] == submitted.application.id
