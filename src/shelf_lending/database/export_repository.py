"""Builds the integrity-sealed annotation export for a loan's borrower."""

from typing import Any

from sqlalchemy import select

from ..models.annotation import Highlight, Note
from ..models.export import (
    ExportBook,
    ExportHighlight,
    ExportLoanSummary,
    ExportNote,
    ExportParty,
    LoanExport,
    seal,
)
from ..models.loan import LoanStatus
from ..observability.context import trace_repository_operation
from .loan_repository import LoanRepository
from .repository import BaseRepository
from .schema import Highlight as HighlightDB
from .schema import Loan as LoanDB
from .schema import Note as NoteDB
from .session import safe_query


def _ended_at(loan: LoanDB):
    return loan.returned_at or loan.revoked_at or loan.expired_at


class ExportRepository(BaseRepository):
    """Snapshots the borrower's own annotations on the loaned book."""

    def __init__(self, session, *, loans: LoanRepository | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.loans = loans or LoanRepository(session, clock=self.clock, config=self.config)

    def export(self, loan_id: str, actor_id: str) -> dict[str, Any]:
        """
        Export payload for ``loan_id``.

        Raises:
            ForbiddenError: ``actor_id`` is not the borrower
            InvalidStateError: The loan never became active, or its export
                window has closed
        """
        with trace_repository_operation("exports", "export", loan_id=loan_id):
            # An overdue loan is expired first so its export window starts now
            self.loans.expire_if_needed(loan_id)
            loan = self.loans.get_row(loan_id)
            self.loans.ensure_export_window(loan, actor_id)
            return self._build(loan)

    def _build(self, loan: LoanDB) -> dict[str, Any]:
        highlights = safe_query(
            self.session,
            lambda s: s.execute(
                select(HighlightDB)
                .where(
                    HighlightDB.book_id == loan.book_id,
                    HighlightDB.created_by_user_id == loan.borrower_id,
                )
                .order_by(HighlightDB.created_at, HighlightDB.id)
            )
            .scalars()
            .all(),
            "Failed to load highlights for export",
        )
        notes = safe_query(
            self.session,
            lambda s: s.execute(
                select(NoteDB)
                .where(
                    NoteDB.book_id == loan.book_id, NoteDB.created_by_user_id == loan.borrower_id
                )
                .order_by(NoteDB.created_at, NoteDB.id)
            )
            .scalars()
            .all(),
            "Failed to load notes for export",
        )

        export = LoanExport(
            exported_at=self.now(),
            loan=ExportLoanSummary(
                id=loan.id,
                status=LoanStatus(loan.status),
                requested_at=loan.requested_at,
                accepted_at=loan.accepted_at,
                due_at=loan.due_at,
                ended_at=_ended_at(loan),
                export_available_until=loan.export_available_until,
                annotation_visibility=loan.annotation_visibility.value,
            ),
            lender=ExportParty(
                id=loan.lender.id,
                display_name=loan.lender.display_name,
                email=loan.lender.email,
            ),
            borrower=ExportParty(
                id=loan.borrower.id,
                display_name=loan.borrower.display_name,
                email=loan.borrower.email,
            ),
            book=ExportBook(id=loan.book.id, title=loan.book.title, author=loan.book.author),
            notes=[ExportNote.from_note(Note.model_validate(n)) for n in notes],
            highlights=[
                ExportHighlight.from_highlight(Highlight.model_validate(h)) for h in highlights
            ],
        )
        return seal(export)
