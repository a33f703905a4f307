"""
Application Query Service for the staff dashboard

Builds filtered, sorted, paginated projections of applications joined with
their applicant and (optionally) the assigned staff member.

Key Features:
- Typed filter specification compiled to SQLAlchemy expressions
- Sort column restricted to an allow-list (unknown keys fall back to created_at DESC)
- Total count computed over the full matching set, independent of the page
- Per-row unread message / document / approved document counts as
  correlated subqueries, so joins never multiply the counts
- Single item fetch with the full document list

Usage:
    @app.get("/applications")
    def list_applications(db: Session = Depends(get_session)):
        service = ApplicationQueryService(db)
        return service.list(ApplicationFilter.build(status="pending"))
"""

import logging
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Optional, List

from sqlalchemy import select, func, and_, or_
from sqlalchemy.orm import Session, aliased

from database.models import (
    Applicant,
    Application,
    ApplicationStatus,
    ChatMessage,
    Document,
    PaymentStatus,
    SenderType,
    Staff,
)
from database.records import (
    ApplicantRecord,
    ApplicationDetail,
    ApplicationListItem,
    ApplicationPage,
    ApplicationRecord,
    Page,
    StaffRecord,
)
from database.repositories import DocumentRepository
from database.monitoring import query_timer

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Search terms are matched literally: LIKE wildcards are escaped with this
LIKE_ESCAPE = "\\"


def escape_like(term: str) -> str:
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


class SortColumn(str, PyEnum):
    """Columns the listing may be ordered by"""
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    FULL_NAME = "full_name"
    STATUS = "status"
    PAYMENT_STATUS = "payment_status"


class SortOrder(str, PyEnum):
    """Sort direction"""
    ASC = "asc"
    DESC = "desc"


def _sort_expression(column: SortColumn):
    return {
        SortColumn.CREATED_AT: Application.created_at,
        SortColumn.UPDATED_AT: Application.updated_at,
        SortColumn.FULL_NAME: Applicant.full_name,
        SortColumn.STATUS: Application.status,
        SortColumn.PAYMENT_STATUS: Application.payment_status,
    }[column]


@dataclass(frozen=True)
class ApplicationFilter:
    """
    Filter, sort and pagination options for the listing.

    Build instances through ApplicationFilter.build(), which is the single
    place where raw request values are checked against the allow-lists.
    """
    status: Optional[ApplicationStatus] = None
    assigned_staff_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    search: Optional[str] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: SortColumn = SortColumn.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC

    @classmethod
    def build(
        cls,
        status: Optional[str] = None,
        assigned_staff_id: Optional[int] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
        max_limit: int = MAX_PAGE_SIZE
    ) -> 'ApplicationFilter':
        """
        Create a filter from raw request values.

        An unrecognized sort_by falls back to created_at in descending
        order; any sort_order other than "asc" means descending.

        Raises:
            ValueError: If status or payment_status is not a known value
        """
        try:
            column = SortColumn(sort_by) if sort_by else SortColumn.CREATED_AT
            direction = SortOrder.ASC if (sort_order or "").lower() == "asc" else SortOrder.DESC
        except ValueError:
            logger.debug("Ignoring unknown sort column: %r", sort_by)
            column, direction = SortColumn.CREATED_AT, SortOrder.DESC

        return cls(
            status=ApplicationStatus(status) if status else None,
            assigned_staff_id=assigned_staff_id,
            payment_status=PaymentStatus(payment_status) if payment_status else None,
            search=search.strip() if search and search.strip() else None,
            page=max(1, int(page)),
            limit=min(max(1, int(limit)), max_limit),
            sort_by=column,
            sort_order=direction,
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def conditions(self) -> list:
        """Conjunctive WHERE conditions for this filter."""
        conditions = []
        if self.status is not None:
            conditions.append(Application.status == self.status)
        if self.assigned_staff_id is not None:
            conditions.append(Application.assigned_staff_id == self.assigned_staff_id)
        if self.payment_status is not None:
            conditions.append(Application.payment_status == self.payment_status)
        if self.search:
            pattern = f"%{escape_like(self.search.lower())}%"
            conditions.append(or_(
                func.lower(Applicant.full_name).like(pattern, escape=LIKE_ESCAPE),
                func.lower(Applicant.email).like(pattern, escape=LIKE_ESCAPE),
                func.lower(Applicant.fiscal_code).like(pattern, escape=LIKE_ESCAPE),
            ))
        return conditions

    def ordering(self) -> list:
        """ORDER BY clauses, with application id as a stable tie-breaker."""
        column = _sort_expression(self.sort_by)
        if self.sort_order == SortOrder.ASC:
            return [column.asc(), Application.id.asc()]
        return [column.desc(), Application.id.desc()]


class ApplicationQueryService:
    """
    Read-only projections over applications.

    Runs on the caller's session and never writes.
    """

    def __init__(self, session: Session):
        """
        Initialize the query service.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session

    @staticmethod
    def _count_subqueries():
        unread = select(func.count(ChatMessage.id)).where(
            ChatMessage.application_id == Application.id,
            ChatMessage.is_read == False,
            ChatMessage.sender_type == SenderType.USER
        ).correlate(Application).scalar_subquery()

        documents = select(func.count(Document.id)).where(
            Document.application_id == Application.id
        ).correlate(Application).scalar_subquery()

        approved = select(func.count(Document.id)).where(
            Document.application_id == Application.id,
            Document.is_approved == True
        ).correlate(Application).scalar_subquery()

        return (
            unread.label("unread_messages"),
            documents.label("documents_count"),
            approved.label("approved_documents"),
        )

    def list(self, spec: ApplicationFilter) -> ApplicationPage:
        """
        List applications matching a filter.

        Args:
            spec: Filter, sort and pagination options

        Returns:
            ApplicationPage with the requested page and pagination metadata
        """
        assigned = aliased(Staff)
        conditions = spec.conditions()

        # Count query
        count_query = select(func.count(Application.id)).select_from(Application).join(
            Applicant, Application.applicant_id == Applicant.id
        )
        if conditions:
            count_query = count_query.where(and_(*conditions))
        with query_timer("count_applications"):
            total = self.session.execute(count_query).scalar_one()

        # Data query
        query = select(
            Application,
            Applicant,
            assigned.full_name,
            assigned.username,
            *self._count_subqueries()
        ).join(
            Applicant, Application.applicant_id == Applicant.id
        ).outerjoin(
            assigned, Application.assigned_staff_id == assigned.id
        )
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(*spec.ordering()).offset(spec.offset).limit(spec.limit)

        items: List[ApplicationListItem] = []
        with query_timer("list_applications"):
            rows = self.session.execute(query).all()

        for row in rows:
            application, applicant = row[0], row[1]
            items.append(ApplicationListItem(
                application=ApplicationRecord.from_model(application),
                applicant_full_name=applicant.full_name,
                applicant_email=applicant.email,
                applicant_fiscal_code=applicant.fiscal_code,
                applicant_phone=applicant.phone,
                applicant_city=applicant.city,
                staff_full_name=row[2],
                staff_username=row[3],
                unread_messages=int(row.unread_messages or 0),
                documents_count=int(row.documents_count or 0),
                approved_documents=int(row.approved_documents or 0),
            ))

        logger.debug(
            "Listed applications: page=%d limit=%d total=%d sort=%s %s",
            spec.page, spec.limit, total, spec.sort_by.value, spec.sort_order.value
        )
        return ApplicationPage(
            items=items,
            page=Page(current_page=spec.page, items_per_page=spec.limit, total_items=total)
        )

    def get(self, application_id: int) -> Optional[ApplicationDetail]:
        """
        Get one application with applicant, assigned staff and documents.

        Returns:
            ApplicationDetail or None if the application does not exist
        """
        query = select(Application, Applicant).join(
            Applicant, Application.applicant_id == Applicant.id
        ).where(Application.id == application_id)

        with query_timer("get_application"):
            row = self.session.execute(query).first()
        if row is None:
            return None

        application, applicant = row
        staff = None
        if application.assigned_staff_id is not None:
            staff_row = self.session.get(Staff, application.assigned_staff_id)
            staff = StaffRecord.from_model(staff_row) if staff_row else None

        return ApplicationDetail(
            application=ApplicationRecord.from_model(application),
            applicant=ApplicantRecord.from_model(applicant),
            assigned_staff=staff,
            documents=DocumentRepository(self.session).list_for(application_id),
        )
