"""
Loan tools: offering, borrowing, answering and ending loans.

Each tool acts for ``actor_id``; the repository decides whether that user
may perform the transition. Successful responses carry the loan's new
state under ``data.loan``.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database.export_repository import ExportRepository
from ..database.loan_repository import LoanRepository
from ..models.library import PolicyOverride
from ..models.loan import Loan
from ..observability import trace_tool
from .common import (
    BOOK_ID_PATTERN,
    LOAN_ID_PATTERN,
    USER_ID_PATTERN,
    run_tool,
    success_response,
)

logger = logging.getLogger(__name__)


def _loan_data(loan: Loan) -> dict[str, Any]:
    return {"loan": loan.model_dump(mode="json")}


class LoanActionInput(BaseModel):
    """Input shared by tools that act on one existing loan."""

    actor_id: str = Field(
        ...,
        description="User performing the action",
        pattern=USER_ID_PATTERN,
        examples=["user_alice"],
    )
    loan_id: str = Field(
        ...,
        description="Loan to act on",
        pattern=LOAN_ID_PATTERN,
        examples=["loan_3f2a9c0d1e4b5a6f7c8d"],
    )


# =============================================================================
# REQUEST / BORROW
# =============================================================================


class RequestLoanInput(BaseModel):
    """
    Input schema for the request_loan tool.

    Terms left unset fall back to the lender's lending template, then to
    the server defaults.
    """

    actor_id: str = Field(..., description="Lender offering the book", pattern=USER_ID_PATTERN)
    borrower_id: str = Field(
        ..., description="User the book is offered to", pattern=USER_ID_PATTERN
    )
    book_id: str = Field(..., description="Book to lend", pattern=BOOK_ID_PATTERN)
    message: str | None = Field(None, description="Note to the borrower", max_length=1000)
    terms: PolicyOverride | None = Field(
        None, description="Per-request overrides of the lender's template"
    )


def _request_loan(session: Session, params: RequestLoanInput) -> dict[str, Any]:
    loan = LoanRepository(session).request(
        params.actor_id,
        params.borrower_id,
        params.book_id,
        message=params.message,
        override=params.terms,
    )
    return success_response(
        f"Offered book '{loan.book_id}' to {loan.borrower_id} for {loan.duration_days} days. "
        "The loan starts when the borrower accepts.",
        _loan_data(loan),
    )


@trace_tool("request_loan")
async def request_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Lender offers a book; re-offering refreshes the pending terms."""
    return run_tool("request_loan", RequestLoanInput, arguments, _request_loan)


class BorrowFromLibraryInput(BaseModel):
    """Input schema for the borrow_from_library tool."""

    actor_id: str = Field(..., description="Borrower", pattern=USER_ID_PATTERN)
    lender_id: str = Field(
        ..., description="Friend whose library holds the book", pattern=USER_ID_PATTERN
    )
    book_id: str = Field(..., description="Book to borrow", pattern=BOOK_ID_PATTERN)
    borrow_anyway: bool = Field(
        False, description="Borrow even if the book is already in your library"
    )


def _borrow_from_library(session: Session, params: BorrowFromLibraryInput) -> dict[str, Any]:
    loan = LoanRepository(session).borrow_from_library(
        params.actor_id, params.lender_id, params.book_id, borrow_anyway=params.borrow_anyway
    )
    return success_response(
        f"Borrowed book '{loan.book_id}' from {loan.lender_id}. "
        f"Due date: {loan.due_at.strftime('%B %d, %Y')}",
        _loan_data(loan),
    )


@trace_tool("borrow_from_library")
async def borrow_from_library_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Borrow directly from a friend's library under their current template."""
    return run_tool("borrow_from_library", BorrowFromLibraryInput, arguments, _borrow_from_library)


# =============================================================================
# ANSWERING AN OFFER
# =============================================================================


class AcceptLoanInput(LoanActionInput):
    """Input schema for the accept_loan tool."""

    borrow_anyway: bool = Field(
        False, description="Accept even if the book is already in your library"
    )


def _accept_loan(session: Session, params: AcceptLoanInput) -> dict[str, Any]:
    loan = LoanRepository(session).accept(
        params.loan_id, params.actor_id, borrow_anyway=params.borrow_anyway
    )
    return success_response(
        f"Loan accepted. Due date: {loan.due_at.strftime('%B %d, %Y')}",
        _loan_data(loan),
    )


@trace_tool("accept_loan")
async def accept_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("accept_loan", AcceptLoanInput, arguments, _accept_loan)


def _reject_loan(session: Session, params: LoanActionInput) -> dict[str, Any]:
    loan = LoanRepository(session).reject(params.loan_id, params.actor_id)
    return success_response("Loan offer declined.", _loan_data(loan))


@trace_tool("reject_loan")
async def reject_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("reject_loan", LoanActionInput, arguments, _reject_loan)


def _cancel_loan(session: Session, params: LoanActionInput) -> dict[str, Any]:
    loan = LoanRepository(session).cancel(params.loan_id, params.actor_id)
    return success_response("Loan offer withdrawn.", _loan_data(loan))


@trace_tool("cancel_loan")
async def cancel_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("cancel_loan", LoanActionInput, arguments, _cancel_loan)


# =============================================================================
# ENDING A LOAN
# =============================================================================


def _revoke_loan(session: Session, params: LoanActionInput) -> dict[str, Any]:
    loan = LoanRepository(session).revoke(params.loan_id, params.actor_id)
    return success_response("Loan revoked.", _loan_data(loan))


@trace_tool("revoke_loan")
async def revoke_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("revoke_loan", LoanActionInput, arguments, _revoke_loan)


class ReturnLoanInput(LoanActionInput):
    """Input schema for the return_loan tool."""

    export_annotations: bool = Field(
        False, description="Include the annotation export in the response"
    )


def _return_loan(session: Session, params: ReturnLoanInput) -> dict[str, Any]:
    loans = LoanRepository(session)
    loan = loans.return_loan(params.loan_id, params.actor_id)
    data = _loan_data(loan)
    if params.export_annotations:
        data["export"] = ExportRepository(session, loans=loans).export(
            params.loan_id, params.actor_id
        )
    return success_response(
        "Loan returned. Annotations can be exported until "
        f"{loan.export_available_until.strftime('%B %d, %Y')}.",
        data,
    )


@trace_tool("return_loan")
async def return_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Borrower returns a loan, optionally exporting annotations in the same call."""
    return run_tool("return_loan", ReturnLoanInput, arguments, _return_loan)


def _export_loan(session: Session, params: LoanActionInput) -> dict[str, Any]:
    payload = ExportRepository(session).export(params.loan_id, params.actor_id)
    return success_response(
        f"Exported {len(payload['highlights'])} highlights and {len(payload['notes'])} notes.",
        {"export": payload},
    )


@trace_tool("export_loan")
async def export_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("export_loan", LoanActionInput, arguments, _export_loan)


loan_tools: list[dict[str, Any]] = [
    {
        "name": "request_loan",
        "description": (
            "Offer a book from your library to another user. Creates a pending loan, "
            "or updates the terms of an existing pending offer for the same book and borrower."
        ),
        "inputSchema": RequestLoanInput.model_json_schema(),
        "handler": request_loan_handler,
    },
    {
        "name": "borrow_from_library",
        "description": (
            "Borrow a book directly from a friend's library. The loan starts immediately "
            "under the lender's lending template."
        ),
        "inputSchema": BorrowFromLibraryInput.model_json_schema(),
        "handler": borrow_from_library_handler,
    },
    {
        "name": "accept_loan",
        "description": (
            "Accept a pending loan offer. If the book is already in your library the call "
            "fails with ALREADY_OWNED; retry with borrow_anyway to read the lender's copy."
        ),
        "inputSchema": AcceptLoanInput.model_json_schema(),
        "handler": accept_loan_handler,
    },
    {
        "name": "reject_loan",
        "description": "Decline a pending loan offer.",
        "inputSchema": LoanActionInput.model_json_schema(),
        "handler": reject_loan_handler,
    },
    {
        "name": "cancel_loan",
        "description": "Withdraw a loan offer you made before the borrower answers it.",
        "inputSchema": LoanActionInput.model_json_schema(),
        "handler": cancel_loan_handler,
    },
    {
        "name": "revoke_loan",
        "description": "End an active loan you lent. The borrower keeps an export window.",
        "inputSchema": LoanActionInput.model_json_schema(),
        "handler": revoke_loan_handler,
    },
    {
        "name": "return_loan",
        "description": (
            "Return an active loan you borrowed. Set export_annotations to receive your "
            "highlights and notes in the same response."
        ),
        "inputSchema": ReturnLoanInput.model_json_schema(),
        "handler": return_loan_handler,
    },
    {
        "name": "export_loan",
        "description": (
            "Export your highlights and notes from a loan, while it is active or during "
            "the export window after it ends."
        ),
        "inputSchema": LoanActionInput.model_json_schema(),
        "handler": export_loan_handler,
    },
]
