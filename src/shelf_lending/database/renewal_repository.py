"""
Renewal repository: due-date extension negotiation.

A renewal lives inside one ACTIVE loan. Approval moves the renewal and the
loan together in one unit, each under its own compare-and-set guard, so an
approval racing with expiry or a return leaves both rows untouched.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select, update

from ..models.audit import AuditAction, AuditEntry
from ..models.loan import LoanStatus, NotificationIntent, event_key
from ..models.renewal import Renewal, RenewalStatus
from ..observability.context import trace_repository_operation
from ..observability.metrics import record_loan_transition
from .loan_repository import LoanRepository
from .notification_repository import dispatch
from .repository import (
    BaseRepository,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
)
from .schema import Loan as LoanDB
from .schema import LoanRenewal as RenewalDB
from .schema import LoanStatusEnum, RenewalStatusEnum
from .session import atomic, safe_query

logger = logging.getLogger(__name__)

RENEWAL_ROLES = ("incoming", "outgoing")


class RenewalRepository(BaseRepository):
    """Request, approve, deny and cancel loan renewals."""

    id_prefix = "renewal"

    def __init__(self, session, *, loans: LoanRepository | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.loans = loans or LoanRepository(session, clock=self.clock, config=self.config)

    # Lookups

    def get_row(self, renewal_id: str) -> RenewalDB:
        renewal = safe_query(
            self.session,
            lambda s: s.execute(
                select(RenewalDB)
                .where(RenewalDB.id == renewal_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            f"Failed to get renewal {renewal_id}",
        )
        if renewal is None:
            raise NotFoundError(f"Renewal {renewal_id} not found")
        return renewal

    def get(self, renewal_id: str, user_id: str) -> Renewal:
        """A renewal the user is lender or borrower on."""
        renewal = self.get_row(renewal_id)
        if user_id not in (renewal.lender_id, renewal.borrower_id):
            raise ForbiddenError("Only the lender or borrower can view this renewal")
        return Renewal.model_validate(renewal)

    def list_for_loan(self, loan_id: str, user_id: str) -> list[Renewal]:
        """Every renewal on a loan, newest first."""
        self.loans.get_for_party(loan_id, user_id)
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(RenewalDB)
                .where(RenewalDB.loan_id == loan_id)
                .order_by(RenewalDB.requested_at.desc(), RenewalDB.id)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all(),
            "Failed to list renewals for loan",
        )
        return [Renewal.model_validate(row) for row in rows]

    def list_for_user(
        self,
        user_id: str,
        role: str,
        *,
        pending_only: bool = True,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[Renewal]:
        """
        Renewals by the user's side of them.

        - incoming: requests awaiting the user as lender
        - outgoing: requests the user made as borrower
        """
        if role not in RENEWAL_ROLES:
            raise ValueError(
                f"Unknown renewal role '{role}'. Expected one of {', '.join(RENEWAL_ROLES)}"
            )
        pagination = pagination or PaginationParams()
        pagination.validate_params()

        party = RenewalDB.lender_id if role == "incoming" else RenewalDB.borrower_id
        query = select(RenewalDB).where(party == user_id)
        if pending_only:
            query = query.where(RenewalDB.status == RenewalStatusEnum.PENDING)

        total = safe_query(
            self.session,
            lambda s: s.execute(select(func.count()).select_from(query.subquery())).scalar() or 0,
            "Failed to count renewals",
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                query.order_by(RenewalDB.requested_at.desc(), RenewalDB.id)
                .offset(pagination.offset)
                .limit(pagination.page_size)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all(),
            "Failed to list renewals",
        )
        return PaginatedResponse[Renewal].build(
            [Renewal.model_validate(row) for row in rows], total, pagination
        )

    # Transitions

    def request(
        self,
        loan_id: str,
        actor_id: str,
        extra_days: int,
        message: str | None = None,
    ) -> Renewal:
        """
        Borrower asks for ``extra_days`` more on an ACTIVE loan.

        Raises:
            ValueError: ``extra_days`` outside 1..max_renewal_days
            ForbiddenError: ``actor_id`` is not the borrower
            InvalidStateError: The loan is not ACTIVE (an overdue loan is
                expired first, so it lands here too)
            ConflictError: A renewal is already pending for the loan
        """
        if extra_days < 1 or extra_days > self.config.max_renewal_days:
            raise ValueError(
                f"extra_days must be between 1 and {self.config.max_renewal_days}"
            )

        with trace_repository_operation("renewals", "request", loan_id=loan_id):
            self.loans.expire_if_needed(loan_id)
            loan = self.loans.get_row(loan_id)
            if actor_id != loan.borrower_id:
                raise ForbiddenError(
                    "Only the borrower can request a renewal", details={"loan_id": loan_id}
                )
            if LoanStatus(loan.status) != LoanStatus.ACTIVE:
                raise InvalidStateError(
                    "Only an active loan can be renewed",
                    details={"loan_id": loan_id, "status": LoanStatus(loan.status).value},
                )

            now = self.now()
            with atomic(self.session, "request_renewal"):
                pending = self.session.execute(
                    select(RenewalDB.id).where(
                        RenewalDB.loan_id == loan_id,
                        RenewalDB.status == RenewalStatusEnum.PENDING,
                    )
                ).scalar_one_or_none()
                if pending is not None:
                    raise ConflictError(
                        "A renewal request is already pending for this loan",
                        details={"loan_id": loan_id, "renewal_id": pending},
                    )

                proposed = loan.due_at + timedelta(days=extra_days)
                renewal = RenewalDB(
                    id=self.new_id(),
                    loan_id=loan_id,
                    requester_user_id=actor_id,
                    lender_id=loan.lender_id,
                    borrower_id=loan.borrower_id,
                    status=RenewalStatusEnum.PENDING,
                    requested_extra_days=extra_days,
                    previous_due_at=loan.due_at,
                    proposed_due_at=proposed,
                    message=message,
                    requested_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(renewal)
                self.session.flush()

                self.loans.audit.record(
                    loan_id,
                    AuditEntry(
                        action=AuditAction.RENEWAL_REQUESTED,
                        actor_user_id=actor_id,
                        target_user_id=loan.lender_id,
                        details={
                            "renewal_id": renewal.id,
                            "extra_days": extra_days,
                            "proposed_due_at": proposed.isoformat(),
                        },
                    ),
                    at=now,
                )
                dispatch(
                    self.loans.sink,
                    [
                        NotificationIntent(
                            user_id=loan.lender_id,
                            kind="RENEWAL_REQUESTED",
                            title="Renewal requested",
                            message=message
                            or f"A borrower asked to keep your book {extra_days} more days.",
                            event_key=event_key(loan_id, f"renewal:{renewal.id}:requested", now),
                            loan_id=loan_id,
                            meta={"renewal_id": renewal.id, "extra_days": extra_days},
                        )
                    ],
                )

            record_loan_transition(AuditAction.RENEWAL_REQUESTED.value)
            logger.info("Renewal %s requested on loan %s", renewal.id, loan_id)
            return Renewal.model_validate(renewal)

    def _pending_for_reviewer(self, renewal_id: str, actor_id: str, action: str) -> RenewalDB:
        renewal = self.get_row(renewal_id)
        if actor_id != renewal.lender_id:
            raise ForbiddenError(
                f"Only the lender can {action} this renewal", details={"renewal_id": renewal_id}
            )
        # An overdue loan expires first, which also expires its pending renewal
        self.loans.expire_if_needed(renewal.loan_id)
        renewal = self.get_row(renewal_id)
        self._require_pending(renewal, action)
        return renewal

    @staticmethod
    def _require_pending(renewal: RenewalDB, action: str) -> None:
        status = RenewalStatus(renewal.status)
        if status != RenewalStatus.PENDING:
            raise InvalidStateError(
                f"Cannot {action} a renewal that is {status.value.lower()}",
                details={"renewal_id": renewal.id, "status": status.value},
            )

    def _close(
        self,
        renewal: RenewalDB,
        outcome: RenewalStatus,
        *,
        reviewer_id: str | None,
        decision_message: str | None = None,
    ) -> None:
        result = self.session.execute(
            update(RenewalDB)
            .where(RenewalDB.id == renewal.id, RenewalDB.status == RenewalStatusEnum.PENDING)
            .values(
                status=RenewalStatusEnum(outcome.value),
                reviewer_user_id=reviewer_id,
                decision_message=decision_message,
                reviewed_at=self.now(),
                updated_at=self.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                "Renewal changed state before this action could complete",
                details={"renewal_id": renewal.id},
            )

    def approve(self, renewal_id: str, actor_id: str, message: str | None = None) -> Renewal:
        """
        Lender approves: the loan's due date becomes the proposed one.

        Raises:
            ForbiddenError: ``actor_id`` is not the lender
            InvalidStateError: The renewal is not PENDING, or the loan is no
                longer ACTIVE
        """
        with trace_repository_operation("renewals", "approve", renewal_id=renewal_id):
            renewal = self._pending_for_reviewer(renewal_id, actor_id, "approve")
            now = self.now()

            with atomic(self.session, "approve_renewal"):
                self._close(
                    renewal, RenewalStatus.APPROVED, reviewer_id=actor_id, decision_message=message
                )
                result = self.session.execute(
                    update(LoanDB)
                    .where(LoanDB.id == renewal.loan_id, LoanDB.status == LoanStatusEnum.ACTIVE)
                    .values(
                        due_at=renewal.proposed_due_at,
                        duration_days=LoanDB.duration_days + renewal.requested_extra_days,
                        due_soon_notified_at=None,
                        overdue_notified_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidStateError(
                        "The loan is no longer active",
                        details={"loan_id": renewal.loan_id, "renewal_id": renewal_id},
                    )

                self.loans.audit.record(
                    renewal.loan_id,
                    AuditEntry(
                        action=AuditAction.RENEWAL_APPROVED,
                        actor_user_id=actor_id,
                        target_user_id=renewal.borrower_id,
                        details={
                            "renewal_id": renewal_id,
                            "previous_due_at": renewal.previous_due_at.isoformat(),
                            "due_at": renewal.proposed_due_at.isoformat(),
                        },
                    ),
                    at=now,
                )
                dispatch(
                    self.loans.sink,
                    [
                        NotificationIntent(
                            user_id=renewal.borrower_id,
                            kind="RENEWAL_APPROVED",
                            title="Renewal approved",
                            message=message
                            or "Your renewal was approved. The loan is due "
                            f"{renewal.proposed_due_at.strftime('%B %d, %Y')}.",
                            event_key=event_key(
                                renewal.loan_id, f"renewal:{renewal_id}:approved", now
                            ),
                            loan_id=renewal.loan_id,
                            meta={
                                "renewal_id": renewal_id,
                                "due_at": renewal.proposed_due_at.isoformat(),
                            },
                        )
                    ],
                )

            self.session.refresh(renewal)
            record_loan_transition(AuditAction.RENEWAL_APPROVED.value)
            logger.info("Renewal %s approved; loan %s extended", renewal_id, renewal.loan_id)
            return Renewal.model_validate(renewal)

    def deny(self, renewal_id: str, actor_id: str, message: str | None = None) -> Renewal:
        """Lender declines; the loan keeps its current due date."""
        with trace_repository_operation("renewals", "deny", renewal_id=renewal_id):
            renewal = self._pending_for_reviewer(renewal_id, actor_id, "deny")
            now = self.now()

            with atomic(self.session, "deny_renewal"):
                self._close(
                    renewal, RenewalStatus.DENIED, reviewer_id=actor_id, decision_message=message
                )
                self.loans.audit.record(
                    renewal.loan_id,
                    AuditEntry(
                        action=AuditAction.RENEWAL_DENIED,
                        actor_user_id=actor_id,
                        target_user_id=renewal.borrower_id,
                        details={"renewal_id": renewal_id},
                    ),
                    at=now,
                )
                dispatch(
                    self.loans.sink,
                    [
                        NotificationIntent(
                            user_id=renewal.borrower_id,
                            kind="RENEWAL_DENIED",
                            title="Renewal declined",
                            message=message or "Your renewal request was declined.",
                            event_key=event_key(
                                renewal.loan_id, f"renewal:{renewal_id}:denied", now
                            ),
                            loan_id=renewal.loan_id,
                            meta={"renewal_id": renewal_id},
                        )
                    ],
                )

            self.session.refresh(renewal)
            record_loan_transition(AuditAction.RENEWAL_DENIED.value)
            return Renewal.model_validate(renewal)

    def cancel(self, renewal_id: str, actor_id: str) -> Renewal:
        """Requester withdraws a PENDING renewal."""
        with trace_repository_operation("renewals", "cancel", renewal_id=renewal_id):
            renewal = self.get_row(renewal_id)
            if actor_id != renewal.requester_user_id:
                raise ForbiddenError(
                    "Only the requester can cancel this renewal",
                    details={"renewal_id": renewal_id},
                )
            self._require_pending(renewal, "cancel")
            now = self.now()

            with atomic(self.session, "cancel_renewal"):
                self._close(renewal, RenewalStatus.CANCELLED, reviewer_id=None)
                self.loans.audit.record(
                    renewal.loan_id,
                    AuditEntry(
                        action=AuditAction.RENEWAL_CANCELLED,
                        actor_user_id=actor_id,
                        target_user_id=renewal.lender_id,
                        details={"renewal_id": renewal_id},
                    ),
                    at=now,
                )

            self.session.refresh(renewal)
            record_loan_transition(AuditAction.RENEWAL_CANCELLED.value)
            return Renewal.model_validate(renewal)

    def pending_for_loans(self, loan_ids: list[str]) -> dict[str, Renewal]:
        """PENDING renewal per loan id, for loan listings."""
        if not loan_ids:
            return {}
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(RenewalDB).where(
                    RenewalDB.loan_id.in_(loan_ids),
                    RenewalDB.status == RenewalStatusEnum.PENDING,
                )
            )
            .scalars()
            .all(),
            "Failed to load pending renewals",
        )
        return {row.loan_id: Renewal.model_validate(row) for row in rows}

