"""Audit trail models: the action vocabulary and the read model for audit rows."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuditAction(str, Enum):
    """Every transition that writes an audit event."""

    LOAN_REQUESTED = "LOAN_REQUESTED"
    LOAN_REQUEST_UPDATED = "LOAN_REQUEST_UPDATED"
    LOAN_BORROWED = "LOAN_BORROWED"
    LOAN_ACCEPTED = "LOAN_ACCEPTED"
    LOAN_REJECTED = "LOAN_REJECTED"
    LOAN_CANCELLED = "LOAN_CANCELLED"
    LOAN_REVOKED = "LOAN_REVOKED"
    LOAN_RETURNED = "LOAN_RETURNED"
    LOAN_EXPIRED = "LOAN_EXPIRED"
    RENEWAL_REQUESTED = "RENEWAL_REQUESTED"
    RENEWAL_APPROVED = "RENEWAL_APPROVED"
    RENEWAL_DENIED = "RENEWAL_DENIED"
    RENEWAL_CANCELLED = "RENEWAL_CANCELLED"
    RENEWAL_EXPIRED = "RENEWAL_EXPIRED"


@dataclass(frozen=True)
class AuditEntry:
    """An audit event waiting to be written alongside its state change."""

    action: AuditAction
    actor_user_id: str | None
    target_user_id: str | None
    details: dict[str, Any] = field(default_factory=dict)


class AuditEvent(BaseModel):
    """A committed, immutable audit row."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Audit event identifier")
    loan_id: str = Field(..., description="Loan the transition belongs to")
    actor_user_id: str | None = Field(None, description="Who triggered it; None for the system")
    target_user_id: str | None = Field(None, description="Who the transition affects")
    action: AuditAction = Field(..., description="Transition tag")
    details: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias="details_json",
        description="Opaque transition payload",
    )
    created_at: datetime = Field(..., description="When the transition committed")

    @field_validator("details", mode="before")
    @classmethod
    def parse_details(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v
