"""
Database Connection Management for the Membership Registration Service

Owns the engine, its connection pool and the session factory:

- DatabaseSettings: config.yaml values overlaid with DB_* / DATABASE_URL
- DatabaseSessionProvider: one per process, created at startup
- UnitOfWork: the transaction boundary of every lifecycle mutation

Engine creation is retried on OperationalError; nothing else is retried.
Pool checkouts feed the tesseramento_db_pool_checked_out gauge.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base
from database.monitoring import record_pool_usage

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Connection and pool settings for the PostgreSQL store."""
    host: str = "localhost"
    port: int = 5432
    database: str = "tesseramento"
    user: str = "postgres"
    password: str = ""
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 2
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls, defaults: Optional['DatabaseSettings'] = None) -> 'DatabaseSettings':
        """Overlay DB_* environment variables on `defaults`."""
        base = defaults or cls()
        return cls(
            host=os.getenv("DB_HOST", base.host),
            port=int(os.getenv("DB_PORT", str(base.port))),
            database=os.getenv("DB_NAME", base.database),
            user=os.getenv("DB_USER", base.user),
            password=os.getenv("DB_PASSWORD", base.password),
            pool_size=int(os.getenv("DB_POOL_SIZE", str(base.pool_size))),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", str(base.max_overflow))),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", str(base.pool_timeout))),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", str(base.pool_recycle))),
            echo=os.getenv("DB_ECHO", str(base.echo)).lower() == "true"
        )

    @classmethod
    def from_config(cls, config) -> 'DatabaseSettings':
        """Build settings from a config_manager.DatabaseConfig, then apply env overrides."""
        return cls.from_env(cls(
            host=config.host,
            port=config.port,
            database=config.name,
            user=config.user,
            password=config.password,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            echo=config.echo,
        ))

    def get_url(self) -> str:
        """DATABASE_URL when set, otherwise a psycopg2 URL from the fields."""
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_settings(self) -> dict:
        """Connection pool keyword arguments for create_engine."""
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


def get_settings() -> DatabaseSettings:
    """Settings from the loaded configuration and environment."""
    from config_manager import get_config

    return DatabaseSettings.from_config(get_config().database)


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Exponential-backoff retry on OperationalError, for engine creation.

    Lifecycle operations are never retried; a store failure surfaces to
    the caller as is.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# UNIT OF WORK
# ============================================

class UnitOfWork:
    """
    One all-or-nothing transaction on one pooled connection.

    Nothing is persisted unless commit() is called inside the block; an
    exception rolls back. The session goes back to the pool on exit.

    Usage:
        with provider.get_unit_of_work() as uow:
            ApplicationRepository(uow.session).update(...)
            AuditRepository(uow.session).append(...)
            uow.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Process-wide owner of the engine and session factory.

    Created once at startup (see get_db_provider) and passed explicitly to
    the lifecycle service; request handlers get sessions through
    get_session / session_scope.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Database settings (config + env when omitted)
            engine: Pre-built engine, e.g. SQLite in tests
        """
        self._settings = settings or get_settings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (if not injected) and the session factory. Idempotent."""
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._track_pool_usage()

        self._initialized = True
        logger.info("Database session provider initialized")

    @property
    def initialized(self) -> bool:
        return self._initialized

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=self._settings.echo,
                connect_args={"check_same_thread": False}
            )
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **self._settings.pool_settings()
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _track_pool_usage(self) -> None:
        engine = self._engine

        @event.listens_for(engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            record_pool_usage(engine)

        @event.listens_for(engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            record_pool_usage(engine, returning=1)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    def get_session(self) -> Generator[Session, None, None]:
        """
        FastAPI dependency yielding a read session for the request.

        The session is closed when the request finishes.
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def get_unit_of_work(self) -> UnitOfWork:
        if self._session_factory is None:
            self.init()
        return UnitOfWork(self._session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Short-lived session: commit on success, rollback on error, always closed.

        Usage:
            with provider.session_scope() as session:
                staff = StaffRepository(session).get_active(staff_id)
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables (DB_CREATE_TABLES=true at startup)."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """The process-wide provider, created lazily on first use."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def set_db_provider(provider: Optional[DatabaseSessionProvider]) -> None:
    """Replace the global provider (application startup and tests)."""
    global _db_provider
    _db_provider = provider


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider bound to a test engine, ignoring config.yaml."""
    return DatabaseSessionProvider(
        settings=settings or DatabaseSettings(),
        engine=engine
    )
