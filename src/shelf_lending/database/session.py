"""
Database session management for the Shelf Lending server.

Every loan, renewal and annotation transition runs inside exactly one
transactional unit. This module supplies the pieces that make that hold:

1. ``DatabaseManager`` owns the engine and session factory
2. ``session_scope()`` is the per-request unit used by tool handlers
3. ``atomic(session)`` wraps a single transition: commit on success,
   rollback and re-raise on any failure, so nothing partially applies
4. ``safe_query`` translates driver errors into
   ``StorageError`` while letting typed lending errors pass through
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config
from .repository import ConflictError, LendingError, StorageError
from .schema import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Partial unique indexes whose violation means another writer won a race
_CONFLICT_INDEXES = {
    "unique_active_loan_per_triple": "An active loan already exists for this book and borrower",
    "unique_pending_loan_per_triple": "A pending loan already exists for this book and borrower",
    "unique_pending_renewal_per_loan": "A renewal request is already pending for this loan",
    "unique_highlight_range_per_author": "A highlight already exists for this range",
}


class DatabaseManager:
    """
    Manages database connections and sessions for the lending engine.

    SQLite runs with foreign keys enabled and one connection per session;
    other backends get a pooled engine with pre-ping.
    """

    def __init__(self, database_url: str | None = None, busy_timeout: float | None = None):
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL. If None, uses the configured one.
            busy_timeout: Seconds a SQLite connection waits for a lock. If None,
                uses the configured value.
        """
        config = get_config()
        if database_url is None:
            database_url = config.get_database_url()
            logger.info("Using database at: %s", database_url)

        self.database_url = database_url
        self.busy_timeout = (
            busy_timeout if busy_timeout is not None else config.database_busy_timeout_seconds
        )
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            if self.database_url.startswith("sqlite"):
                self._engine = self._create_sqlite_engine()
            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,
                    echo=False,
                )

            logger.info("Database engine created: %s", self._engine.url)

        return self._engine

    def _create_sqlite_engine(self) -> Engine:
        """
        Build a SQLite engine.

        File databases use the default pool: each session holds its own
        connection and transaction, and writers wait up to the busy timeout
        for each other's locks. An in-memory database exists per connection,
        so it keeps a single shared one.
        """
        if make_url(self.database_url).database in (None, "", ":memory:"):
            engine = create_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False, "timeout": self.busy_timeout},
                echo=False,
            )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    def create_session(self) -> Session:
        """Create a new database session. Callers own closing it."""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for one request.

        ```python
        with db_manager.session_scope() as session:
            LoanRepository(session).accept(loan_id, actor_id)
        ```
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except Exception:
            logger.debug("Rolling back request session")
            session.rollback()
            raise
        finally:
            session.close()

    def init_database(self, drop_existing: bool = False) -> None:
        """
        Initialize the database schema.

        Args:
            drop_existing: If True, drop all tables before creating
        """
        engine = self.engine

        if drop_existing:
            logger.warning("Dropping all existing tables...")
            Base.metadata.drop_all(bind=engine)

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialization complete")

    def verify_connection(self) -> bool:
        """Return True when a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return True
        except SQLAlchemyError:
            logger.exception("Database connection failed")
            return False

    def close(self) -> None:
        """Dispose of the engine. Called when the server shuts down."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None


_db_manager: DatabaseManager | None = None


def get_db_manager(database_url: str | None = None) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        database_url: Database URL (only used on first call)
    """
    global _db_manager  # noqa: PLW0603 - Singleton pattern for database manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)

    return _db_manager


def reset_db_manager() -> None:
    """Drop the global manager (tests and shutdown)."""
    global _db_manager  # noqa: PLW0603

    if _db_manager is not None:
        _db_manager.close()
    _db_manager = None


def get_session() -> Session:
    """
    Get a new database session.

    Sessions are context managers; use ``with get_session() as session:``
    so the connection is released.
    """
    return get_db_manager().create_session()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Convenience wrapper around the global manager's session scope."""
    with get_db_manager().session_scope() as session:
        yield session


def translate_integrity_error(error: IntegrityError) -> LendingError:
    """Map a uniqueness violation onto the lending error taxonomy."""
    detail = str(error.orig) if error.orig is not None else str(error)
    for index_name, message in _CONFLICT_INDEXES.items():
        if index_name in detail:
            return ConflictError(message, details={"constraint": index_name})
    # SQLite reports partial index violations by column list, not index name
    if "loans.book_id, loans.lender_id, loans.borrower_id" in detail:
        return ConflictError("A loan with this status already exists for this book and borrower")
    if "loan_renewals.loan_id" in detail:
        return ConflictError(_CONFLICT_INDEXES["unique_pending_renewal_per_loan"])
    if "highlights.book_id, highlights.cfi_range" in detail:
        return ConflictError(_CONFLICT_INDEXES["unique_highlight_range_per_author"])
    return StorageError(f"Integrity violation: {detail}")


@contextmanager
def atomic(session: Session, operation: str) -> Generator[Session, None, None]:
    """
    Run one state transition as a single unit of work.

    Everything flushed inside the block is committed together. On any
    error the session is rolled back; typed lending errors propagate
    unchanged, integrity violations become ``ConflictError`` and other
    driver errors become ``StorageError``.
    """
    try:
        yield session
        session.commit()
    except LendingError:
        session.rollback()
        raise
    except IntegrityError as e:
        session.rollback()
        logger.info("%s rejected by constraint: %s", operation, e.orig)
        raise translate_integrity_error(e) from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("%s failed in storage", operation)
        raise StorageError(f"Database operation '{operation}' failed: {e!s}") from e
    except Exception:
        session.rollback()
        raise


def safe_query(session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Execute a read with storage errors translated to ``StorageError``.

    Args:
        session: The database session
        query_func: Function that performs the query
        error_msg: Prefix for the raised error
    """
    try:
        return query_func(session)
    except SQLAlchemyError as e:
        logger.exception("Query failed")
        raise StorageError(f"{error_msg}: Database query failed") from e
