"""
Annotation repository: highlights and notes under loan policy.

Writes go through three gates in order: entitlement (the author can open
the book), the capability the active borrow loan grants, and for edits
and deletes an optimistic revision check. The scope tag is assigned once,
at creation, from the author's active borrow loan.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete, select, update

from ..models.annotation import (
    AnnotationScope,
    Capability,
    Highlight,
    Note,
    VisibilityFilter,
    VisibleAnnotations,
    resolve_scope,
)
from ..observability.context import trace_repository_operation
from .entitlement_repository import EntitlementResolver
from .loan_repository import LoanRepository
from .repository import BaseRepository, ConflictError, ForbiddenError, NotFoundError
from .schema import AnnotationScopeEnum
from .schema import Highlight as HighlightDB
from .schema import Note as NoteDB
from .session import atomic, safe_query

logger = logging.getLogger(__name__)


class HighlightCreateSchema(BaseModel):
    """Schema for creating (or re-saving) a highlight."""

    cfi_range: str = Field(..., min_length=1, max_length=500)
    text: str = Field(..., min_length=1)
    note: str | None = None
    color: str | None = Field(None, max_length=40)
    context_prefix: str | None = None
    context_suffix: str | None = None
    chapter_href: str | None = Field(None, max_length=500)


class HighlightUpdateSchema(BaseModel):
    """Editable highlight fields; unset fields are left alone."""

    text: str | None = Field(None, min_length=1)
    note: str | None = None
    color: str | None = Field(None, max_length=40)

    @field_validator("text")
    @classmethod
    def text_cannot_be_cleared(cls, v: str | None) -> str:
        if v is None:
            raise ValueError("text cannot be null; omit it to keep the current text")
        return v


class NoteCreateSchema(BaseModel):
    """Schema for creating a note."""

    text: str = Field(..., min_length=1)
    cfi: str | None = Field(None, max_length=500)
    message: str | None = None


class NoteUpdateSchema(BaseModel):
    """Editable note fields; unset fields are left alone."""

    text: str | None = Field(None, min_length=1)
    message: str | None = None

    @field_validator("text")
    @classmethod
    def text_cannot_be_cleared(cls, v: str | None) -> str:
        if v is None:
            raise ValueError("text cannot be null; omit it to keep the current text")
        return v


# Per-kind wiring: table, read model, add and edit capabilities
_KINDS = {
    "highlight": (HighlightDB, Highlight, Capability.ADD_HIGHLIGHTS, Capability.EDIT_HIGHLIGHTS),
    "note": (NoteDB, Note, Capability.ADD_NOTES, Capability.EDIT_NOTES),
}


class AnnotationRepository(BaseRepository):
    """Create, edit, delete and list annotations."""

    def __init__(
        self,
        session,
        *,
        loans: LoanRepository | None = None,
        resolver: EntitlementResolver | None = None,
        **kwargs,
    ):
        super().__init__(session, **kwargs)
        self.loans = loans or LoanRepository(session, clock=self.clock, config=self.config)
        self.resolver = resolver or EntitlementResolver(
            session, loans=self.loans, clock=self.clock, config=self.config
        )

    # Writes

    def create_highlight(
        self, actor_id: str, book_id: str, data: HighlightCreateSchema
    ) -> Highlight:
        """
        Save a highlight. Re-saving the same range updates the existing one.

        Raises:
            ForbiddenError: No access to the book, or the loan withholds
                adding (or, for an existing range, editing) highlights
        """
        with trace_repository_operation("annotations", "create_highlight", book_id=book_id):
            entitlement = self.resolver.require_access(actor_id, book_id)
            loan = entitlement.active_borrow_loan
            Capability.ADD_HIGHLIGHTS.require(loan)

            now = self.now()
            with atomic(self.session, "create_highlight"):
                row = self.session.execute(
                    select(HighlightDB)
                    .where(
                        HighlightDB.book_id == book_id,
                        HighlightDB.cfi_range == data.cfi_range,
                        HighlightDB.created_by_user_id == actor_id,
                    )
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()

                if row is not None:
                    Capability.EDIT_HIGHLIGHTS.require(loan)
                    for field, value in data.model_dump(exclude={"cfi_range"}).items():
                        setattr(row, field, value)
                    row.revision = row.revision + 1
                    row.updated_at = now
                else:
                    row = HighlightDB(
                        id=self.new_id("highlight"),
                        book_id=book_id,
                        created_by_user_id=actor_id,
                        scope=self._scope_column(resolve_scope(loan)),
                        revision=1,
                        created_at=now,
                        updated_at=now,
                        **data.model_dump(),
                    )
                    self.session.add(row)
            return Highlight.model_validate(row)

    def create_note(self, actor_id: str, book_id: str, data: NoteCreateSchema) -> Note:
        """
        Save a new note.

        Raises:
            ForbiddenError: No access to the book, or the loan withholds adding notes
        """
        with trace_repository_operation("annotations", "create_note", book_id=book_id):
            entitlement = self.resolver.require_access(actor_id, book_id)
            loan = entitlement.active_borrow_loan
            Capability.ADD_NOTES.require(loan)

            now = self.now()
            with atomic(self.session, "create_note"):
                row = NoteDB(
                    id=self.new_id("note"),
                    book_id=book_id,
                    created_by_user_id=actor_id,
                    scope=self._scope_column(resolve_scope(loan)),
                    revision=1,
                    created_at=now,
                    updated_at=now,
                    **data.model_dump(),
                )
                self.session.add(row)
            return Note.model_validate(row)

    def update_highlight(
        self,
        actor_id: str,
        highlight_id: str,
        changes: HighlightUpdateSchema,
        expected_revision: int | None = None,
    ) -> Highlight:
        return self._update("highlight", actor_id, highlight_id, changes, expected_revision)

    def update_note(
        self,
        actor_id: str,
        note_id: str,
        changes: NoteUpdateSchema,
        expected_revision: int | None = None,
    ) -> Note:
        return self._update("note", actor_id, note_id, changes, expected_revision)

    def delete_highlight(
        self, actor_id: str, highlight_id: str, expected_revision: int | None = None
    ) -> None:
        self._delete("highlight", actor_id, highlight_id, expected_revision)

    def delete_note(
        self, actor_id: str, note_id: str, expected_revision: int | None = None
    ) -> None:
        self._delete("note", actor_id, note_id, expected_revision)

    def _load_owned(self, kind: str, actor_id: str, annotation_id: str):
        model, _, _, edit_capability = _KINDS[kind]
        row = self.session.execute(
            select(model).where(model.id == annotation_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"{kind.capitalize()} {annotation_id} not found")
        if row.created_by_user_id != actor_id:
            raise ForbiddenError(f"Only the author can change this {kind}")

        entitlement = self.resolver.require_access(actor_id, row.book_id)
        edit_capability.require(entitlement.active_borrow_loan)
        return row

    def _check_revision(self, kind: str, row: Any, expected_revision: int | None) -> int:
        if expected_revision is not None and expected_revision != row.revision:
            raise ConflictError(
                f"{kind.capitalize()} was changed by another client",
                current_revision=row.revision,
                details={"expected_revision": expected_revision},
            )
        return row.revision if expected_revision is None else expected_revision

    def _current_revision(self, kind: str, annotation_id: str) -> int | None:
        model = _KINDS[kind][0]
        return self.session.execute(
            select(model.revision).where(model.id == annotation_id)
        ).scalar_one_or_none()

    def _update(
        self,
        kind: str,
        actor_id: str,
        annotation_id: str,
        changes: BaseModel,
        expected_revision: int | None,
    ):
        """
        Edit under an optimistic revision guard.

        Raises:
            ConflictError: The stored revision is not ``expected_revision``;
                carries ``current_revision`` and nothing is written
        """
        model, read_model, _, _ = _KINDS[kind]
        with trace_repository_operation(
            "annotations", f"update_{kind}", annotation_id=annotation_id
        ):
            row = self._load_owned(kind, actor_id, annotation_id)
            guard = self._check_revision(kind, row, expected_revision)
            values = changes.model_dump(exclude_unset=True)

            with atomic(self.session, f"update_{kind}"):
                result = self.session.execute(
                    update(model)
                    .where(model.id == annotation_id, model.revision == guard)
                    .values(**values, revision=guard + 1, updated_at=self.now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        f"{kind.capitalize()} was changed by another client",
                        current_revision=self._current_revision(kind, annotation_id),
                        details={"expected_revision": guard},
                    )

            self.session.refresh(row)
            return read_model.model_validate(row)

    def _delete(
        self, kind: str, actor_id: str, annotation_id: str, expected_revision: int | None
    ) -> None:
        model = _KINDS[kind][0]
        with trace_repository_operation(
            "annotations", f"delete_{kind}", annotation_id=annotation_id
        ):
            row = self._load_owned(kind, actor_id, annotation_id)
            guard = self._check_revision(kind, row, expected_revision)

            with atomic(self.session, f"delete_{kind}"):
                result = self.session.execute(
                    delete(model)
                    .where(model.id == annotation_id, model.revision == guard)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        f"{kind.capitalize()} was changed by another client",
                        current_revision=self._current_revision(kind, annotation_id),
                        details={"expected_revision": guard},
                    )
            self.session.expunge(row)

    # Reads

    def visibility_filter(self, viewer_id: str, book_id: str) -> VisibilityFilter:
        """Build the read-time visibility rule for ``viewer_id`` on ``book_id``."""
        entitlement = self.resolver.require_access(viewer_id, book_id)
        loan = entitlement.active_borrow_loan
        if loan is not None:
            return VisibilityFilter(
                book_id=book_id,
                viewer_id=viewer_id,
                borrowing_from=loan.lender_id,
                share_lender_annotations=loan.share_lender_annotations,
            )
        return VisibilityFilter(
            book_id=book_id,
            viewer_id=viewer_id,
            active_borrower_ids=self.loans.active_borrower_ids(book_id) - {viewer_id},
        )

    def list_visible(self, viewer_id: str, book_id: str) -> VisibleAnnotations:
        """Highlights and notes on ``book_id`` that ``viewer_id`` may see."""
        with trace_repository_operation("annotations", "list_visible", book_id=book_id):
            rule = self.visibility_filter(viewer_id, book_id)
            highlights = safe_query(
                self.session,
                lambda s: s.execute(
                    select(HighlightDB)
                    .where(rule.where(HighlightDB))
                    .order_by(HighlightDB.created_at, HighlightDB.id)
                )
                .scalars()
                .all(),
                "Failed to list highlights",
            )
            notes = safe_query(
                self.session,
                lambda s: s.execute(
                    select(NoteDB).where(rule.where(NoteDB)).order_by(NoteDB.created_at, NoteDB.id)
                )
                .scalars()
                .all(),
                "Failed to list notes",
            )
            return VisibleAnnotations(
                book_id=book_id,
                viewer_id=viewer_id,
                highlights=[Highlight.model_validate(h) for h in highlights],
                notes=[Note.model_validate(n) for n in notes],
            )

    @staticmethod
    def _scope_column(scope: AnnotationScope) -> AnnotationScopeEnum:
        return AnnotationScopeEnum(scope.value)
