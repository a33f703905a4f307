"""
Database Package for the Membership Registration Service

This package provides:
- SQLAlchemy ORM models for applicants, applications, staff and the audit log
- Typed records returned across the repository boundary
- FastAPI Dependency Injection for database sessions
- Unit of Work pattern for transaction management
- Repository pattern for data access
- Application lifecycle engine and listing queries
- Query timing and health checks
"""

from database.models import (
    Base,
    Applicant,
    Staff,
    Application,
    AuditEntry,
    Document,
    ChatMessage,
    ApplicationStatus,
    PaymentMethod,
    PaymentStatus,
    StaffRole,
    AuditAction,
    SenderType,
)
from database.records import (
    ApplicantRecord,
    StaffRecord,
    ApplicationRecord,
    AuditEntryRecord,
    DocumentRecord,
    ApplicationListItem,
    ApplicationDetail,
    ApplicationPage,
    Page,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    get_db_provider,
    set_db_provider,
    # Testing support
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    NotFoundError,
    InvalidStaffError,
    DuplicateApplicantError,
)
from database.lifecycle_service import (
    ApplicationLifecycleService,
    SubmissionResult,
    StatusChangeResult,
)
from database.query_service import (
    ApplicationQueryService,
    ApplicationFilter,
    SortColumn,
    SortOrder,
)
from database.monitoring import (
    query_timer,
    get_db_metrics,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Applicant',
    'Staff',
    'Application',
    'AuditEntry',
    'Document',
    'ChatMessage',
    # Enums
    'ApplicationStatus',
    'PaymentMethod',
    'PaymentStatus',
    'StaffRole',
    'AuditAction',
    'SenderType',
    # Records
    'ApplicantRecord',
    'StaffRecord',
    'ApplicationRecord',
    'AuditEntryRecord',
    'DocumentRecord',
    'ApplicationListItem',
    'ApplicationDetail',
    'ApplicationPage',
    'Page',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'get_db_provider',
    'set_db_provider',
    # Testing support
    'create_test_provider',
    # Errors
    'RepositoryError',
    'NotFoundError',
    'InvalidStaffError',
    'DuplicateApplicantError',
    # Services
    'ApplicationLifecycleService',
    'SubmissionResult',
    'StatusChangeResult',
    'ApplicationQueryService',
    'ApplicationFilter',
    'SortColumn',
    'SortOrder',
    # Monitoring
    'query_timer',
    'get_db_metrics',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
