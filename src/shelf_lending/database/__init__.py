"""
Database package for the Shelf Lending server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and the atomic transition unit (session.py)
- The lending error taxonomy and pagination helpers (repository.py)
- One repository per engine component (loans, renewals, annotations,
  entitlements, templates, notifications, audit)

Repositories are imported from their own modules; this package only
re-exports the foundations so that ``models`` can depend on the error
taxonomy without importing the repositories that depend on ``models``.
"""

from .repository import (
    AlreadyOwnedError,
    BaseRepository,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    LendingError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
    StorageError,
)
from .schema import Base
from .session import (
    DatabaseManager,
    atomic,
    get_db_manager,
    get_session,
    reset_db_manager,
    safe_query,
    session_scope,
)

__all__ = [
    "AlreadyOwnedError",
    "Base",
    "BaseRepository",
    "ConflictError",
    "DatabaseManager",
    "ForbiddenError",
    "InvalidStateError",
    "LendingError",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "StorageError",
    "atomic",
    "get_db_manager",
    "get_session",
    "reset_db_manager",
    "safe_query",
    "session_scope",
]
