"""
Loan resources: a user's loans by role, and the renewals and audit trail of
one loan.

Listing borrowed or lent loans first expires any that are past their
effective end, so the listing never shows a stale ACTIVE loan.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from ..database.loan_repository import LoanRepository
from ..database.renewal_repository import RenewalRepository
from ..database.session import session_scope
from ..models.loan import Loan
from ..models.renewal import Renewal
from ..observability import trace_resource
from .common import resource_errors

logger = logging.getLogger(__name__)


class LoanListEntry(Loan):
    """A loan as listed, with its pending renewal if there is one."""

    pending_renewal: Renewal | None = Field(None, description="Renewal awaiting the lender")


class LoanListResponse(BaseModel):
    """Response schema for a user's loans in one role."""

    user_id: str
    role: str
    loans: list[LoanListEntry]
    total: int = Field(..., description="Total number of loans in this role")
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool


@trace_resource("loans")
async def list_user_loans_handler(user_id: str, role: str) -> dict[str, Any]:
    """Loans where ``user_id`` plays ``role`` (incoming, outgoing, borrowed, lent, ended)."""
    logger.debug("MCP Resource Request - users/%s/loans/%s", user_id, role)
    with resource_errors("loan list"), session_scope() as session:
        loans = LoanRepository(session)
        result = loans.list_for_user(user_id, role)
        pending = RenewalRepository(session, loans=loans).pending_for_loans(
            [loan.id for loan in result.items]
        )
        response = LoanListResponse(
            user_id=user_id,
            role=role,
            loans=[
                LoanListEntry(**loan.model_dump(), pending_renewal=pending.get(loan.id))
                for loan in result.items
            ],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
            has_next=result.has_next,
            has_previous=result.has_previous,
        )
        return response.model_dump(mode="json")


@trace_resource("renewals")
async def list_loan_renewals_handler(user_id: str, loan_id: str) -> dict[str, Any]:
    """Every renewal request on one loan, newest first."""
    with resource_errors("loan renewals"), session_scope() as session:
        renewals = RenewalRepository(session).list_for_loan(loan_id, user_id)
        return {
            "loan_id": loan_id,
            "renewals": [renewal.model_dump(mode="json") for renewal in renewals],
        }


@trace_resource("renewals")
async def list_user_renewals_handler(user_id: str, role: str) -> dict[str, Any]:
    """Pending renewals awaiting the user (incoming) or made by the user (outgoing)."""
    with resource_errors("renewal list"), session_scope() as session:
        result = RenewalRepository(session).list_for_user(user_id, role)
        return {
            "user_id": user_id,
            "role": role,
            "renewals": [renewal.model_dump(mode="json") for renewal in result.items],
            "total": result.total,
            "page": result.page,
            "has_next": result.has_next,
        }


@trace_resource("audit")
async def get_loan_audit_handler(user_id: str, loan_id: str) -> dict[str, Any]:
    """The transition log of one loan, oldest first."""
    with resource_errors("loan audit trail"), session_scope() as session:
        loans = LoanRepository(session)
        loans.get_for_party(loan_id, user_id)
        events = loans.audit.list_for_loan(loan_id)
        return {
            "loan_id": loan_id,
            "events": [event.model_dump(mode="json") for event in events],
        }


loan_resources: list[dict[str, Any]] = [
    {
        "uri_template": "lending://users/{user_id}/loans/{role}",
        "name": "Loans by Role",
        "description": (
            "A user's loans in one role: incoming or outgoing offers, borrowed or lent "
            "active loans, or ended loans."
        ),
        "mime_type": "application/json",
        "handler": list_user_loans_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/loans/{loan_id}/renewals",
        "name": "Loan Renewals",
        "description": "Renewal requests on a loan the user is lender or borrower on.",
        "mime_type": "application/json",
        "handler": list_loan_renewals_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/loans/{loan_id}/audit",
        "name": "Loan Audit Trail",
        "description": "Every state transition recorded for a loan.",
        "mime_type": "application/json",
        "handler": get_loan_audit_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/renewals/{role}",
        "name": "Pending Renewals",
        "description": (
            "Pending renewal requests awaiting the user's decision (incoming) "
            "or made by the user (outgoing)."
        ),
        "mime_type": "application/json",
        "handler": list_user_renewals_handler,
    },
]
