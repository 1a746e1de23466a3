"""Renewal request models: due-date extension negotiation scoped to one loan."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RenewalStatus(str, Enum):
    """Status of a renewal request."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Renewal(BaseModel):
    """
    A borrower's request to push a loan's due date out.

    ``previous_due_at`` and ``proposed_due_at`` are captured at request time
    so an approval applies exactly what the lender reviewed.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(
        ...,
        description="Unique identifier for the renewal request",
        pattern=r"^renewal_[a-zA-Z0-9]+$",
    )
    loan_id: str
    requester_user_id: str
    reviewer_user_id: str | None = None
    lender_id: str
    borrower_id: str
    status: RenewalStatus
    requested_extra_days: int = Field(..., ge=1, description="Days added to the due date")
    previous_due_at: datetime
    proposed_due_at: datetime
    message: str | None = None
    decision_message: str | None = None
    requested_at: datetime
    reviewed_at: datetime | None = None
