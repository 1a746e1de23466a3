"""
Annotation models and the scope rules that govern who sees what.

An annotation's ``scope`` is fixed when it is written, from the writer's
active borrow loan at that moment. Later changes to the loan's policy, or
the loan ending, never rewrite it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, not_, or_

from ..database.repository import ForbiddenError
from .loan import AnnotationVisibility


class AnnotationScope(str, Enum):
    """Write-time visibility tag on a highlight or note."""

    OWNER = "OWNER"
    LENDER_VISIBLE = "LENDER_VISIBLE"
    PRIVATE_BORROWER = "PRIVATE_BORROWER"


class Capability(Enum):
    """The four per-loan annotation permissions a lender may withhold."""

    ADD_HIGHLIGHTS = ("can_add_highlights", "Lender disabled adding highlights for this loan")
    EDIT_HIGHLIGHTS = ("can_edit_highlights", "Lender disabled editing highlights for this loan")
    ADD_NOTES = ("can_add_notes", "Lender disabled adding notes for this loan")
    EDIT_NOTES = ("can_edit_notes", "Lender disabled editing notes for this loan")

    def __init__(self, loan_field: str, denial: str):
        self.loan_field = loan_field
        self.denial = denial

    def require(self, loan: Any | None) -> None:
        """Raise ``ForbiddenError`` if ``loan`` withholds this capability.

        Without an active borrow loan the writer owns the book and every
        capability is granted.
        """
        if loan is not None and not getattr(loan, self.loan_field):
            raise ForbiddenError(self.denial, capability=self.name)


def resolve_scope(active_borrow_loan: Any | None) -> AnnotationScope:
    """Scope for an annotation written now by the holder of ``active_borrow_loan``."""
    if active_borrow_loan is None:
        return AnnotationScope.OWNER
    if (
        AnnotationVisibility(active_borrow_loan.annotation_visibility)
        == AnnotationVisibility.SHARED_WITH_LENDER
    ):
        return AnnotationScope.LENDER_VISIBLE
    return AnnotationScope.PRIVATE_BORROWER


@dataclass(frozen=True)
class VisibilityFilter:
    """
    Read-time visibility for one viewer on one book.

    Two shapes:

    - the viewer is an active borrower (``borrowing_from`` set): they see
      their own annotations, plus the lender's OWNER-scoped ones when the
      loan shares lender annotations
    - anyone else: everything except PRIVATE_BORROWER annotations authored
      by a currently active borrower of the book
    """

    book_id: str
    viewer_id: str
    borrowing_from: str | None = None
    share_lender_annotations: bool = False
    active_borrower_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def viewer_is_borrower(self) -> bool:
        return self.borrowing_from is not None

    def allows(self, annotation: Any) -> bool:
        """Evaluate the filter against one loaded annotation."""
        if annotation.book_id != self.book_id:
            return False
        author = annotation.created_by_user_id
        scope = AnnotationScope(annotation.scope)
        if self.viewer_is_borrower:
            if author == self.viewer_id:
                return True
            return (
                self.share_lender_annotations
                and author == self.borrowing_from
                and scope == AnnotationScope.OWNER
            )
        return not (
            scope == AnnotationScope.PRIVATE_BORROWER and author in self.active_borrower_ids
        )

    def where(self, model: Any):
        """The same rule as a SQLAlchemy clause over ``model``'s columns."""
        on_book = model.book_id == self.book_id
        if self.viewer_is_borrower:
            visible = model.created_by_user_id == self.viewer_id
            if self.share_lender_annotations:
                visible = or_(
                    visible,
                    and_(
                        model.created_by_user_id == self.borrowing_from,
                        model.scope == AnnotationScope.OWNER.value,
                    ),
                )
            return and_(on_book, visible)
        if not self.active_borrower_ids:
            return on_book
        hidden = and_(
            model.scope == AnnotationScope.PRIVATE_BORROWER.value,
            model.created_by_user_id.in_(sorted(self.active_borrower_ids)),
        )
        return and_(on_book, not_(hidden))


class Highlight(BaseModel):
    """A highlighted text range."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    book_id: str
    created_by_user_id: str
    cfi_range: str = Field(..., description="EPUB CFI range of the highlighted text")
    text: str
    note: str | None = None
    color: str | None = None
    context_prefix: str | None = None
    context_suffix: str | None = None
    chapter_href: str | None = None
    scope: AnnotationScope
    revision: int = Field(..., ge=1)
    created_at: datetime
    updated_at: datetime


class Note(BaseModel):
    """A free-form reader note."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    book_id: str
    created_by_user_id: str
    cfi: str | None = Field(None, description="Optional EPUB CFI anchor")
    text: str
    message: str | None = None
    scope: AnnotationScope
    revision: int = Field(..., ge=1)
    created_at: datetime
    updated_at: datetime


class VisibleAnnotations(BaseModel):
    """What one viewer may see on one book."""

    book_id: str
    viewer_id: str
    highlights: list[Highlight]
    notes: list[Note]
