"""
Library-side models: access records, entitlements, lending templates and
notifications.

These are the collaborator-facing facts the loan engine reads and writes
around a loan, as opposed to the loan itself.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..database.repository import ForbiddenError
from .loan import AnnotationVisibility, Loan, LoanPolicy


class LibraryAccessSource(str, Enum):
    """How a book entered a user's library."""

    UPLOAD = "UPLOAD"
    LOAN = "LOAN"


class LibraryAccess(BaseModel):
    """A book sitting in a user's library, possibly in the trash."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    book_id: str
    source: LibraryAccessSource
    is_deleted: bool = False
    deleted_at: datetime | None = None
    created_at: datetime


class EntitlementStatus(str, Enum):
    """Whether a user may open a book right now."""

    ACCESSIBLE = "ACCESSIBLE"
    TRASHED = "TRASHED"
    NONE = "NONE"


class Entitlement(BaseModel):
    """
    Result of resolving a user's access to a book.

    An active borrow loan grants access on its own. Otherwise a live
    library record does; a record in the trash is recoverable but not
    currently readable, which is reported separately from having nothing.
    """

    user_id: str
    book_id: str
    library_access: LibraryAccess | None = None
    active_borrow_loan: Loan | None = None

    @property
    def status(self) -> EntitlementStatus:
        if self.active_borrow_loan is not None:
            return EntitlementStatus.ACCESSIBLE
        if self.library_access is None:
            return EntitlementStatus.NONE
        if self.library_access.is_deleted:
            return EntitlementStatus.TRASHED
        return EntitlementStatus.ACCESSIBLE

    @property
    def can_read(self) -> bool:
        return self.status == EntitlementStatus.ACCESSIBLE

    def require_access(self) -> None:
        """Raise ``ForbiddenError`` unless the user can currently read the book."""
        status = self.status
        if status == EntitlementStatus.TRASHED:
            raise ForbiddenError(
                "Book is in trash. Restore it to continue.",
                code="BOOK_IN_TRASH",
                details={"book_id": self.book_id},
            )
        if status == EntitlementStatus.NONE:
            raise ForbiddenError(
                "You do not have access to this book",
                code="NO_ACCESS",
                details={"book_id": self.book_id},
            )

    def summary(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "library_access": self.library_access.model_dump(mode="json")
            if self.library_access
            else None,
            "active_borrow_loan": self.active_borrow_loan.model_dump(mode="json")
            if self.active_borrow_loan
            else None,
        }


class LendingTemplate(LoanPolicy):
    """A lender's standing defaults for new loans."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    name: str = Field("Default lending template", max_length=200)
    is_default: bool = Field(
        False, description="True when no template is stored and configured defaults apply"
    )

    def policy(self) -> LoanPolicy:
        return LoanPolicy.model_validate(self.model_dump(include=set(LoanPolicy.model_fields)))


class PolicyOverride(BaseModel):
    """Per-request overrides of the lender's template when offering a loan."""

    duration_days: int | None = Field(None, ge=1, le=365)
    grace_days: int | None = Field(None, ge=0, le=30)
    remind_before_days: int | None = Field(None, ge=0, le=30)
    can_add_highlights: bool | None = None
    can_edit_highlights: bool | None = None
    can_add_notes: bool | None = None
    can_edit_notes: bool | None = None
    annotation_visibility: AnnotationVisibility | None = None
    share_lender_annotations: bool | None = None

    def apply(self, base: LoanPolicy) -> LoanPolicy:
        values = base.model_dump()
        values.update(self.model_dump(exclude_none=True, include=set(LoanPolicy.model_fields)))
        return LoanPolicy.model_validate(values)


class LendingTemplateUpdate(PolicyOverride):
    """Partial update for a lending template; unset fields keep their value."""

    name: str | None = Field(None, min_length=1, max_length=200)


class Notification(BaseModel):
    """A stored notification, as delivered by the database sink."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    loan_id: str | None = None
    event_key: str
    kind: str
    title: str
    message: str
    payload: dict[str, Any] = Field(default_factory=dict, validation_alias="payload_json")
    read_at: datetime | None = None
    created_at: datetime

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v
