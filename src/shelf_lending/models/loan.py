"""
Loan models for the Shelf Lending server.

This module holds three things:

- ``Loan`` and ``LoanPolicy``: the read model of a loan and the effective
  lending terms resolved from an override, a template or the defaults
- the expiration predicate, a pure function of ``(loan, now)`` that any
  caller may evaluate as often as it likes
- transition planners: each returns a ``LoanTransition`` that bundles the
  column changes with the audit entry and notifications that must be
  committed in the same unit, so neither can be applied without the other
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..database.repository import AlreadyOwnedError, ForbiddenError, InvalidStateError
from .audit import AuditAction, AuditEntry


class LoanStatus(str, Enum):
    """Status of a loan."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class AnnotationVisibility(str, Enum):
    """Borrower annotation policy negotiated on a loan."""

    PRIVATE = "PRIVATE"
    SHARED_WITH_LENDER = "SHARED_WITH_LENDER"


TERMINAL_STATUSES = frozenset(
    {
        LoanStatus.RETURNED,
        LoanStatus.REVOKED,
        LoanStatus.EXPIRED,
        LoanStatus.REJECTED,
        LoanStatus.CANCELLED,
    }
)

# Terminal states reached from ACTIVE; these carry an export window
ENDED_STATUSES = frozenset({LoanStatus.RETURNED, LoanStatus.REVOKED, LoanStatus.EXPIRED})


class LoanPolicy(BaseModel):
    """Effective lending terms for one loan."""

    duration_days: int = Field(14, ge=1, le=365, description="Days from acceptance to due date")
    grace_days: int = Field(0, ge=0, le=30, description="Days after due date before expiry")
    remind_before_days: int = Field(3, ge=0, le=30, description="Due-soon reminder lead time")
    can_add_highlights: bool = True
    can_edit_highlights: bool = True
    can_add_notes: bool = True
    can_edit_notes: bool = True
    annotation_visibility: AnnotationVisibility = AnnotationVisibility.PRIVATE
    share_lender_annotations: bool = False


class Loan(BaseModel):
    """
    A lending relationship for one book between one lender and one borrower.

    Built from the ``loans`` row; timestamps are naive UTC.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(
        ...,
        description="Unique identifier for the loan",
        pattern=r"^loan_[a-zA-Z0-9]+$",
        examples=["loan_3f2a9c0d1e4b5a6f7c8d"],
    )
    book_id: str = Field(..., description="Book being lent")
    lender_id: str = Field(..., description="User who owns the lent copy")
    borrower_id: str = Field(..., description="User receiving access")
    status: LoanStatus = Field(..., description="Current loan status")
    message: str | None = Field(None, description="Note from the lender", max_length=1000)

    duration_days: int = Field(..., ge=1)
    grace_days: int = Field(..., ge=0)
    remind_before_days: int = Field(3, ge=0)

    requested_at: datetime
    accepted_at: datetime | None = None
    due_at: datetime | None = None
    returned_at: datetime | None = None
    revoked_at: datetime | None = None
    expired_at: datetime | None = None
    rejected_at: datetime | None = None
    cancelled_at: datetime | None = None
    export_available_until: datetime | None = None

    created_access_on_accept: bool = False

    can_add_highlights: bool = True
    can_edit_highlights: bool = True
    can_add_notes: bool = True
    can_edit_notes: bool = True
    annotation_visibility: AnnotationVisibility = AnnotationVisibility.PRIVATE
    share_lender_annotations: bool = False

    due_soon_notified_at: datetime | None = None
    overdue_notified_at: datetime | None = None
    ended_reminder_notified_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def effective_end(self) -> datetime | None:
        return effective_end(self)


class LoanLike(Protocol):
    """Anything carrying the fields the expiration predicate reads."""

    status: Any
    due_at: datetime | None
    grace_days: int


def effective_end(loan: LoanLike) -> datetime | None:
    """``due_at + grace_days``; None when the loan has no due date yet."""
    if loan.due_at is None:
        return None
    return loan.due_at + timedelta(days=loan.grace_days or 0)


def is_past_effective_end(loan: LoanLike, now: datetime) -> bool:
    """
    True when an ACTIVE loan is eligible for expiration.

    Pure: reading it never changes anything, so interactive reads and the
    maintenance sweep can both evaluate it freely.
    """
    if LoanStatus(loan.status) != LoanStatus.ACTIVE:
        return False
    end = effective_end(loan)
    return end is not None and end < now


@dataclass(frozen=True)
class NotificationIntent:
    """A notification the engine wants delivered once its unit commits."""

    user_id: str
    kind: str
    title: str
    message: str
    event_key: str
    loan_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LoanTransition:
    """
    Everything one loan transition writes.

    ``expected_status`` is the compare-and-set guard: the change only
    applies if the row still holds that status when the unit commits.
    """

    loan_id: str
    expected_status: LoanStatus
    changes: dict[str, Any]
    audit: AuditEntry
    notifications: tuple[NotificationIntent, ...] = ()
    grant_access: bool = False
    release_access: bool = False

    @property
    def target_status(self) -> LoanStatus:
        return self.changes["status"]


def event_key(loan_id: str, event: str, at: datetime) -> str:
    """Deterministic notification key per (loan, transition, timestamp)."""
    return f"loan:{loan_id}:{event}:{at.isoformat(timespec='seconds')}"


class LoanParties(Protocol):
    id: str
    book_id: str
    lender_id: str
    borrower_id: str
    status: Any
    duration_days: int
    grace_days: int
    due_at: datetime | None
    created_access_on_accept: bool


def _require_status(loan: LoanParties, expected: LoanStatus, action: str) -> None:
    current = LoanStatus(loan.status)
    if current != expected:
        raise InvalidStateError(
            f"Cannot {action} a loan that is {current.value.lower()}",
            details={"loan_id": loan.id, "status": current.value},
        )


def _require_party(loan: LoanParties, actor_id: str, role: str, action: str) -> None:
    party = loan.borrower_id if role == "borrower" else loan.lender_id
    if actor_id != party:
        raise ForbiddenError(
            f"Only the {role} can {action} this loan",
            details={"loan_id": loan.id},
        )


def plan_accept(
    loan: LoanParties,
    actor_id: str,
    now: datetime,
    *,
    has_library_access: bool,
    borrow_anyway: bool = False,
) -> LoanTransition:
    """Borrower accepts a PENDING loan."""
    _require_party(loan, actor_id, "borrower", "accept")
    _require_status(loan, LoanStatus.PENDING, "accept")
    if has_library_access and not borrow_anyway:
        raise AlreadyOwnedError(loan.book_id, loan.id)

    due_at = now + timedelta(days=loan.duration_days)
    return LoanTransition(
        loan_id=loan.id,
        expected_status=LoanStatus.PENDING,
        changes={
            "status": LoanStatus.ACTIVE,
            "accepted_at": now,
            "due_at": due_at,
            "created_access_on_accept": not has_library_access,
        },
        audit=AuditEntry(
            action=AuditAction.LOAN_ACCEPTED,
            actor_user_id=actor_id,
            target_user_id=loan.lender_id,
            details={"due_at": due_at.isoformat(), "borrow_anyway": borrow_anyway},
        ),
        notifications=(
            NotificationIntent(
                user_id=loan.lender_id,
                kind="LOAN_ACCEPTED",
                title="Loan accepted",
                message="Your loan offer was accepted.",
                event_key=event_key(loan.id, "accepted", now),
                loan_id=loan.id,
                meta={"book_id": loan.book_id, "due_at": due_at.isoformat()},
            ),
        ),
        grant_access=not has_library_access,
    )


def plan_reject(loan: LoanParties, actor_id: str, now: datetime) -> LoanTransition:
    """Borrower declines a PENDING loan."""
    _require_party(loan, actor_id, "borrower", "reject")
    _require_status(loan, LoanStatus.PENDING, "reject")
    return LoanTransition(
        loan_id=loan.id,
        expected_status=LoanStatus.PENDING,
        changes={"status": LoanStatus.REJECTED, "rejected_at": now},
        audit=AuditEntry(
            action=AuditAction.LOAN_REJECTED,
            actor_user_id=actor_id,
            target_user_id=loan.lender_id,
        ),
        notifications=(
            NotificationIntent(
                user_id=loan.lender_id,
                kind="LOAN_REJECTED",
                title="Loan declined",
                message="Your loan offer was declined.",
                event_key=event_key(loan.id, "rejected", now),
                loan_id=loan.id,
                meta={"book_id": loan.book_id},
            ),
        ),
    )


def plan_cancel(loan: LoanParties, actor_id: str, now: datetime) -> LoanTransition:
    """Lender withdraws a PENDING offer before it is answered."""
    _require_party(loan, actor_id, "lender", "cancel")
    _require_status(loan, LoanStatus.PENDING, "cancel")
    return LoanTransition(
        loan_id=loan.id,
        expected_status=LoanStatus.PENDING,
        changes={"status": LoanStatus.CANCELLED, "cancelled_at": now},
        audit=AuditEntry(
            action=AuditAction.LOAN_CANCELLED,
            actor_user_id=actor_id,
            target_user_id=loan.borrower_id,
        ),
    )


_END_EVENTS = {
    LoanStatus.RETURNED: ("returned_at", AuditAction.LOAN_RETURNED, "Loan returned"),
    LoanStatus.REVOKED: ("revoked_at", AuditAction.LOAN_REVOKED, "Loan revoked"),
    LoanStatus.EXPIRED: ("expired_at", AuditAction.LOAN_EXPIRED, "Loan expired"),
}


def _plan_end(
    loan: LoanParties,
    outcome: LoanStatus,
    now: datetime,
    export_window_days: int,
    *,
    actor_id: str | None,
    target_id: str,
    notify_ids: tuple[str, ...],
    details: dict[str, Any] | None = None,
) -> LoanTransition:
    timestamp_field, action, title = _END_EVENTS[outcome]
    export_until = now + timedelta(days=export_window_days)
    payload = {"export_available_until": export_until.isoformat(), **(details or {})}
    return LoanTransition(
        loan_id=loan.id,
        expected_status=LoanStatus.ACTIVE,
        changes={
            "status": outcome,
            timestamp_field: now,
            "export_available_until": export_until,
        },
        audit=AuditEntry(
            action=action,
            actor_user_id=actor_id,
            target_user_id=target_id,
            details=payload,
        ),
        notifications=tuple(
            NotificationIntent(
                user_id=user_id,
                kind=action.value,
                title=title,
                message=(
                    f"{title}. Annotations can be exported until "
                    f"{export_until.strftime('%B %d, %Y')}."
                    if user_id == loan.borrower_id
                    else f"{title}."
                ),
                event_key=event_key(loan.id, outcome.value.lower(), now),
                loan_id=loan.id,
                meta={"book_id": loan.book_id},
            )
            for user_id in notify_ids
        ),
        release_access=bool(loan.created_access_on_accept),
    )


def plan_revoke(
    loan: LoanParties, actor_id: str, now: datetime, export_window_days: int
) -> LoanTransition:
    """Lender takes back an ACTIVE loan."""
    _require_party(loan, actor_id, "lender", "revoke")
    _require_status(loan, LoanStatus.ACTIVE, "revoke")
    return _plan_end(
        loan,
        LoanStatus.REVOKED,
        now,
        export_window_days,
        actor_id=actor_id,
        target_id=loan.borrower_id,
        notify_ids=(loan.borrower_id,),
    )


def plan_return(
    loan: LoanParties, actor_id: str, now: datetime, export_window_days: int
) -> LoanTransition:
    """Borrower hands back an ACTIVE loan."""
    _require_party(loan, actor_id, "borrower", "return")
    _require_status(loan, LoanStatus.ACTIVE, "return")
    return _plan_end(
        loan,
        LoanStatus.RETURNED,
        now,
        export_window_days,
        actor_id=actor_id,
        target_id=loan.lender_id,
        notify_ids=(loan.lender_id,),
    )


def plan_expire(loan: LoanParties, now: datetime, export_window_days: int) -> LoanTransition | None:
    """
    System expiry of an ACTIVE loan past its effective end.

    Returns None when there is nothing to do, which makes repeated calls
    on an already expired loan a no-op.
    """
    if not is_past_effective_end(loan, now):
        return None
    return _plan_end(
        loan,
        LoanStatus.EXPIRED,
        now,
        export_window_days,
        actor_id=None,
        target_id=loan.borrower_id,
        notify_ids=(loan.borrower_id, loan.lender_id),
        details={
            "due_at": loan.due_at.isoformat() if loan.due_at else None,
            "grace_days": loan.grace_days,
        },
    )
