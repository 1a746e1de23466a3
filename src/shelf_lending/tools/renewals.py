"""Renewal tools: asking for more time on a loan and answering the request."""

import logging
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database.renewal_repository import RenewalRepository
from ..models.renewal import Renewal
from ..observability import trace_tool
from .common import LOAN_ID_PATTERN, RENEWAL_ID_PATTERN, USER_ID_PATTERN, run_tool, success_response

logger = logging.getLogger(__name__)


def _renewal_data(renewal: Renewal) -> dict[str, Any]:
    return {"renewal": renewal.model_dump(mode="json")}


class RequestRenewalInput(BaseModel):
    """
    Input schema for the request_renewal tool.

    The upper bound on ``extra_days`` is a server setting, so it is checked
    by the repository rather than here.
    """

    actor_id: str = Field(..., description="Borrower asking for more time", pattern=USER_ID_PATTERN)
    loan_id: str = Field(..., description="Active loan to extend", pattern=LOAN_ID_PATTERN)
    extra_days: int = Field(..., description="Days to add to the due date", ge=1, examples=[7, 14])
    message: str | None = Field(None, description="Note to the lender", max_length=1000)


class RenewalActionInput(BaseModel):
    """Input shared by tools that act on one renewal request."""

    actor_id: str = Field(..., description="User performing the action", pattern=USER_ID_PATTERN)
    renewal_id: str = Field(..., description="Renewal request", pattern=RENEWAL_ID_PATTERN)


class ReviewRenewalInput(RenewalActionInput):
    """Input schema for approve_renewal and deny_renewal."""

    message: str | None = Field(None, description="Note to the borrower", max_length=1000)


def _request_renewal(session: Session, params: RequestRenewalInput) -> dict[str, Any]:
    renewal = RenewalRepository(session).request(
        params.loan_id, params.actor_id, params.extra_days, params.message
    )
    return success_response(
        f"Asked the lender for {renewal.requested_extra_days} more days "
        f"(until {renewal.proposed_due_at.strftime('%B %d, %Y')}).",
        _renewal_data(renewal),
    )


def _approve_renewal(session: Session, params: ReviewRenewalInput) -> dict[str, Any]:
    renewal = RenewalRepository(session).approve(params.renewal_id, params.actor_id, params.message)
    return success_response(
        f"Renewal approved. The loan is now due {renewal.proposed_due_at.strftime('%B %d, %Y')}.",
        _renewal_data(renewal),
    )


def _deny_renewal(session: Session, params: ReviewRenewalInput) -> dict[str, Any]:
    renewal = RenewalRepository(session).deny(params.renewal_id, params.actor_id, params.message)
    return success_response("Renewal declined.", _renewal_data(renewal))


def _cancel_renewal(session: Session, params: RenewalActionInput) -> dict[str, Any]:
    renewal = RenewalRepository(session).cancel(params.renewal_id, params.actor_id)
    return success_response("Renewal request withdrawn.", _renewal_data(renewal))


@trace_tool("request_renewal")
async def request_renewal_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("request_renewal", RequestRenewalInput, arguments, _request_renewal)


@trace_tool("approve_renewal")
async def approve_renewal_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("approve_renewal", ReviewRenewalInput, arguments, _approve_renewal)


@trace_tool("deny_renewal")
async def deny_renewal_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("deny_renewal", ReviewRenewalInput, arguments, _deny_renewal)


@trace_tool("cancel_renewal")
async def cancel_renewal_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("cancel_renewal", RenewalActionInput, arguments, _cancel_renewal)


renewal_tools: list[dict[str, Any]] = [
    {
        "name": "request_renewal",
        "description": (
            "Ask the lender to extend an active loan you borrowed. "
            "Only one request per loan can be pending."
        ),
        "inputSchema": RequestRenewalInput.model_json_schema(),
        "handler": request_renewal_handler,
    },
    {
        "name": "approve_renewal",
        "description": "Approve a pending renewal on a loan you lent; the due date moves out.",
        "inputSchema": ReviewRenewalInput.model_json_schema(),
        "handler": approve_renewal_handler,
    },
    {
        "name": "deny_renewal",
        "description": "Decline a pending renewal on a loan you lent.",
        "inputSchema": ReviewRenewalInput.model_json_schema(),
        "handler": deny_renewal_handler,
    },
    {
        "name": "cancel_renewal",
        "description": "Withdraw a renewal request you made.",
        "inputSchema": RenewalActionInput.model_json_schema(),
        "handler": cancel_renewal_handler,
    },
]
