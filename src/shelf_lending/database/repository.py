"""
Shared repository plumbing for the Shelf Lending server.

This module holds the pieces every repository uses:

1. **Error taxonomy**: the typed, expected outcomes a transition can
   produce. Tool handlers turn them into structured MCP errors; only
   ``StorageError`` represents an unexpected failure.
2. **Pagination**: the parameters and envelope shared by list resources.
3. **BaseRepository**: session, clock and config wiring plus id generation.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..clock import utcnow
from ..config import LendingConfig, get_config

ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)


class LendingError(Exception):
    """Base class for expected, typed lending outcomes."""

    code = "LENDING_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Structured form used in tool error envelopes."""
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(LendingError):
    """A referenced loan, renewal, annotation, book or user does not exist."""

    code = "NOT_FOUND"


class InvalidStateError(LendingError):
    """A transition was attempted from a state that does not allow it."""

    code = "INVALID_STATE"


class ForbiddenError(LendingError):
    """The actor lacks the role or capability a transition requires."""

    code = "FORBIDDEN"

    def __init__(
        self,
        message: str,
        *,
        capability: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if capability is not None:
            details["capability"] = capability
        super().__init__(message, details=details)
        self.capability = capability
        if code is not None:
            self.code = code


class ConflictError(LendingError):
    """A concurrency collision: duplicate loan or renewal, or a stale revision."""

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        *,
        current_revision: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if current_revision is not None:
            details["current_revision"] = current_revision
        super().__init__(message, details=details)
        self.current_revision = current_revision


class AlreadyOwnedError(ConflictError):
    """The borrower already has this book; retrying with ``borrow_anyway`` succeeds."""

    code = "ALREADY_OWNED"

    def __init__(self, book_id: str, loan_id: str | None = None):
        details: dict[str, Any] = {"book_id": book_id, "retry_with": {"borrow_anyway": True}}
        if loan_id is not None:
            details["loan_id"] = loan_id
        super().__init__(
            "You already have this book in your library. "
            "Borrow anyway to read the lender's copy under this loan.",
            details=details,
        )
        self.book_id = book_id


class StorageError(LendingError):
    """Unexpected storage failure; the only unclassified outcome."""

    code = "STORAGE_ERROR"


class PaginationParams(BaseModel):
    """Standard pagination parameters for list resources."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for SQL queries."""
        return (self.page - 1) * self.page_size

    def validate_params(self) -> None:
        """Validate pagination parameters."""
        if self.page < 1:
            raise ValueError("Page must be >= 1")
        if self.page_size < 1 or self.page_size > 100:
            raise ValueError("Page size must be between 1 and 100")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated envelope for list resources."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(
        cls, items: list[ResponseSchemaType], total: int, pagination: PaginationParams
    ) -> "PaginatedResponse[ResponseSchemaType]":
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )


class BaseRepository:
    """
    Common wiring for the lending repositories.

    Repositories share a session, an injectable clock and the config so a
    test can drive deadlines without touching wall-clock time.
    """

    id_prefix = "obj"

    def __init__(
        self,
        session: Session,
        *,
        clock: Callable[[], datetime] = utcnow,
        config: LendingConfig | None = None,
    ):
        self.session = session
        self.clock = clock
        self.config = config or get_config()

    def now(self) -> datetime:
        return self.clock()

    def new_id(self, prefix: str | None = None) -> str:
        """Generate a prefixed identifier, e.g. ``loan_3f2a...``."""
        return f"{prefix or self.id_prefix}_{uuid4().hex[:20]}"
