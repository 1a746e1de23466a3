"""
Loan repository: the loan state machine.

Every transition follows the same shape:

1. Load the loan fresh and let a planner in ``models.loan`` validate the
   actor and status and describe the change
2. Inside one ``atomic`` unit, apply the change with a compare-and-set
   ``UPDATE ... WHERE status = expected``, create or release the library
   access record, stage the audit event and notifications
3. Commit, or roll everything back

The compare-and-set closes the window between reading the status and
writing it: of two racing accepts exactly one updates a row, and the
other gets ``InvalidStateError``. Expiry is the exception: losing that race
means someone else already expired the loan, so it is a silent no-op.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update

from ..models.audit import AuditAction, AuditEntry
from ..models.library import PolicyOverride
from ..models.loan import (
    ENDED_STATUSES,
    TERMINAL_STATUSES,
    Loan,
    LoanStatus,
    LoanTransition,
    NotificationIntent,
    event_key,
    is_past_effective_end,
    plan_accept,
    plan_cancel,
    plan_expire,
    plan_reject,
    plan_return,
    plan_revoke,
)
from ..models.renewal import RenewalStatus
from ..observability.context import trace_repository_operation
from ..observability.metrics import record_loan_transition
from ..social import OpenSocialGraph, SocialGraph
from .audit_repository import AuditTrail
from .library_repository import LibraryRepository
from .notification_repository import DatabaseNotificationSink, NotificationSink, dispatch
from .repository import (
    AlreadyOwnedError,
    BaseRepository,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
)
from .schema import AnnotationVisibilityEnum, LoanStatusEnum, RenewalStatusEnum
from .schema import Loan as LoanDB
from .schema import LoanRenewal as RenewalDB
from .session import atomic, safe_query
from .template_repository import TemplateRepository

logger = logging.getLogger(__name__)

LOAN_ROLES = ("incoming", "outgoing", "borrowed", "lent", "ended")


def _to_column(value: Any) -> Any:
    if isinstance(value, LoanStatus):
        return LoanStatusEnum(value.value)
    return value


class LoanRepository(BaseRepository):
    """
    Owns loan creation and every loan status transition.

    Collaborators are injectable: the notification sink (defaults to the
    database sink on the same session) and the social graph check used
    before a loan may be offered or borrowed.
    """

    id_prefix = "loan"

    def __init__(
        self,
        session,
        *,
        sink: NotificationSink | None = None,
        social_graph: SocialGraph | None = None,
        **kwargs,
    ):
        super().__init__(session, **kwargs)
        self.sink = sink or DatabaseNotificationSink(session, clock=self.clock, config=self.config)
        self.social_graph = social_graph or OpenSocialGraph()
        self.audit = AuditTrail(session, clock=self.clock, config=self.config)
        self.library = LibraryRepository(session, clock=self.clock, config=self.config)
        self.templates = TemplateRepository(session, clock=self.clock, config=self.config)

    # Lookups

    def get_row(self, loan_id: str) -> LoanDB:
        """Load a loan, discarding any stale copy held by this session."""
        loan = safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB)
                .where(LoanDB.id == loan_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            f"Failed to get loan {loan_id}",
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get(self, loan_id: str) -> Loan:
        return Loan.model_validate(self.get_row(loan_id))

    def get_for_party(self, loan_id: str, user_id: str) -> Loan:
        """A loan the user is lender or borrower on."""
        loan = self.get_row(loan_id)
        if user_id not in (loan.lender_id, loan.borrower_id):
            raise ForbiddenError("Only the lender or borrower can view this loan")
        return Loan.model_validate(loan)

    def _find_by_status(
        self, book_id: str, lender_id: str, borrower_id: str, status: LoanStatusEnum
    ) -> LoanDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB)
                .where(
                    LoanDB.book_id == book_id,
                    LoanDB.lender_id == lender_id,
                    LoanDB.borrower_id == borrower_id,
                    LoanDB.status == status,
                )
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            "Failed to look up loan for book",
        )

    def get_active_borrow_loan(self, user_id: str, book_id: str) -> LoanDB | None:
        """The most recently accepted ACTIVE loan where ``user_id`` borrows ``book_id``."""
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB)
                .where(
                    LoanDB.borrower_id == user_id,
                    LoanDB.book_id == book_id,
                    LoanDB.status == LoanStatusEnum.ACTIVE,
                )
                .order_by(LoanDB.accepted_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            "Failed to get active borrow loan",
        )

    def active_loans_for_book(self, book_id: str) -> list[LoanDB]:
        return list(
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(LoanDB)
                    .where(LoanDB.book_id == book_id, LoanDB.status == LoanStatusEnum.ACTIVE)
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .all(),
                "Failed to list active loans for book",
            )
        )

    def active_borrower_ids(self, book_id: str) -> frozenset[str]:
        """Borrowers currently holding an ACTIVE loan on ``book_id``.

        Loans already past their effective end are expired first so they
        no longer count.
        """
        borrowers = set()
        for loan in self.active_loans_for_book(book_id):
            if is_past_effective_end(loan, self.now()):
                self.expire_if_needed(loan.id)
                continue
            borrowers.add(loan.borrower_id)
        return frozenset(borrowers)

    def list_for_user(
        self,
        user_id: str,
        role: str,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[Loan]:
        """
        Loans by the user's role in them.

        - incoming: PENDING offers to the user
        - outgoing: PENDING offers from the user
        - borrowed: ACTIVE loans the user borrows
        - lent: ACTIVE loans the user lends
        - ended: any terminal loan the user was a party to
        """
        if role not in LOAN_ROLES:
            raise ValueError(f"Unknown loan role '{role}'. Expected one of {', '.join(LOAN_ROLES)}")
        pagination = pagination or PaginationParams()
        pagination.validate_params()

        if role in ("borrowed", "lent"):
            self.expire_overdue_for(user_id)

        conditions = {
            "incoming": and_(
                LoanDB.borrower_id == user_id, LoanDB.status == LoanStatusEnum.PENDING
            ),
            "outgoing": and_(LoanDB.lender_id == user_id, LoanDB.status == LoanStatusEnum.PENDING),
            "borrowed": and_(
                LoanDB.borrower_id == user_id, LoanDB.status == LoanStatusEnum.ACTIVE
            ),
            "lent": and_(LoanDB.lender_id == user_id, LoanDB.status == LoanStatusEnum.ACTIVE),
            "ended": and_(
                or_(LoanDB.lender_id == user_id, LoanDB.borrower_id == user_id),
                LoanDB.status.in_([LoanStatusEnum(s.value) for s in TERMINAL_STATUSES]),
            ),
        }
        query = select(LoanDB).where(conditions[role])
        order = LoanDB.updated_at.desc() if role == "ended" else LoanDB.requested_at.desc()

        total = safe_query(
            self.session,
            lambda s: s.execute(select(func.count()).select_from(query.subquery())).scalar() or 0,
            "Failed to count loans",
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                query.order_by(order, LoanDB.id)
                .offset(pagination.offset)
                .limit(pagination.page_size)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all(),
            "Failed to list loans",
        )
        return PaginatedResponse[Loan].build(
            [Loan.model_validate(row) for row in rows], total, pagination
        )

    # Creation

    def _check_parties(self, lender_id: str, borrower_id: str, book_id: str) -> None:
        if lender_id == borrower_id:
            raise ForbiddenError("You cannot lend a book to yourself")
        self.library.require_user(lender_id)
        self.library.require_user(borrower_id)
        self.library.require_book(book_id)
        if not self.social_graph.may_borrow(borrower_id, lender_id):
            raise ForbiddenError(
                "This user does not lend to you", details={"lender_id": lender_id}
            )
        if not self.library.holds_book(lender_id, book_id):
            raise ForbiddenError(
                "The lender does not have this book in their library",
                details={"book_id": book_id},
            )

    def request(
        self,
        lender_id: str,
        borrower_id: str,
        book_id: str,
        *,
        message: str | None = None,
        override: PolicyOverride | None = None,
    ) -> Loan:
        """
        Offer a book to a borrower.

        Creates the PENDING loan for the triple, or refreshes the existing
        one with the new terms. Terms resolve as override, then the lender's
        template, then configured defaults.

        Raises:
            ForbiddenError: Self-lending, blocked by the social graph, or
                the lender does not hold the book
            ConflictError: An ACTIVE loan already exists for the triple
        """
        with trace_repository_operation("loans", "request", book_id=book_id):
            self._check_parties(lender_id, borrower_id, book_id)
            policy = self.templates.resolve_policy(lender_id, override)
            now = self.now()

            with atomic(self.session, "request_loan"):
                if self._find_by_status(book_id, lender_id, borrower_id, LoanStatusEnum.ACTIVE):
                    raise ConflictError(
                        "An active loan already exists for this book and borrower",
                        details={"book_id": book_id, "borrower_id": borrower_id},
                    )

                loan = self._find_by_status(
                    book_id, lender_id, borrower_id, LoanStatusEnum.PENDING
                )
                action = AuditAction.LOAN_REQUEST_UPDATED
                if loan is None:
                    action = AuditAction.LOAN_REQUESTED
                    loan = LoanDB(
                        id=self.new_id(),
                        book_id=book_id,
                        lender_id=lender_id,
                        borrower_id=borrower_id,
                        status=LoanStatusEnum.PENDING,
                        created_at=now,
                    )
                    self.session.add(loan)

                loan.message = message
                loan.requested_at = now
                loan.updated_at = now
                loan.duration_days = policy.duration_days
                loan.grace_days = policy.grace_days
                loan.remind_before_days = policy.remind_before_days
                loan.can_add_highlights = policy.can_add_highlights
                loan.can_edit_highlights = policy.can_edit_highlights
                loan.can_add_notes = policy.can_add_notes
                loan.can_edit_notes = policy.can_edit_notes
                loan.annotation_visibility = AnnotationVisibilityEnum(
                    policy.annotation_visibility.value
                )
                loan.share_lender_annotations = policy.share_lender_annotations
                self.session.flush()

                self.audit.record(
                    loan.id,
                    AuditEntry(
                        action=action,
                        actor_user_id=lender_id,
                        target_user_id=borrower_id,
                        details={
                            "duration_days": policy.duration_days,
                            "grace_days": policy.grace_days,
                        },
                    ),
                    at=now,
                )
                dispatch(
                    self.sink,
                    [
                        NotificationIntent(
                            user_id=borrower_id,
                            kind="LOAN_REQUESTED",
                            title="New loan offer",
                            message=message or "A book was offered to you.",
                            event_key=event_key(loan.id, "requested", now),
                            loan_id=loan.id,
                            meta={"book_id": book_id, "lender_id": lender_id},
                        )
                    ],
                )

            record_loan_transition(action.value)
            logger.info("Loan %s offered by %s to %s", loan.id, lender_id, borrower_id)
            return Loan.model_validate(loan)

    def borrow_from_library(
        self,
        borrower_id: str,
        lender_id: str,
        book_id: str,
        *,
        borrow_anyway: bool = False,
    ) -> Loan:
        """
        Borrow directly from a friend's library, skipping the offer step.

        The loan starts ACTIVE under the lender's current template; there
        are no per-request overrides on this path.

        Raises:
            ForbiddenError: Self-borrowing, blocked by the social graph, or
                the lender does not hold the book
            ConflictError: An ACTIVE loan already exists for the triple
            AlreadyOwnedError: The borrower has the book and did not pass
                ``borrow_anyway``
        """
        with trace_repository_operation("loans", "borrow_from_library", book_id=book_id):
            self._check_parties(lender_id, borrower_id, book_id)
            policy = self.templates.resolve_policy(lender_id)
            now = self.now()

            with atomic(self.session, "borrow_from_library"):
                if self._find_by_status(book_id, lender_id, borrower_id, LoanStatusEnum.ACTIVE):
                    raise ConflictError(
                        "An active loan already exists for this book and borrower",
                        details={"book_id": book_id, "borrower_id": borrower_id},
                    )
                has_access = self.library.get_record(borrower_id, book_id) is not None
                if has_access and not borrow_anyway:
                    raise AlreadyOwnedError(book_id)

                due_at = now + timedelta(days=policy.duration_days)
                loan = LoanDB(
                    id=self.new_id(),
                    book_id=book_id,
                    lender_id=lender_id,
                    borrower_id=borrower_id,
                    status=LoanStatusEnum.ACTIVE,
                    requested_at=now,
                    accepted_at=now,
                    due_at=due_at,
                    created_access_on_accept=not has_access,
                    duration_days=policy.duration_days,
                    grace_days=policy.grace_days,
                    remind_before_days=policy.remind_before_days,
                    can_add_highlights=policy.can_add_highlights,
                    can_edit_highlights=policy.can_edit_highlights,
                    can_add_notes=policy.can_add_notes,
                    can_edit_notes=policy.can_edit_notes,
                    annotation_visibility=AnnotationVisibilityEnum(
                        policy.annotation_visibility.value
                    ),
                    share_lender_annotations=policy.share_lender_annotations,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(loan)
                self.session.flush()
                if not has_access:
                    self.library.grant_for_loan(borrower_id, book_id)

                self.audit.record(
                    loan.id,
                    AuditEntry(
                        action=AuditAction.LOAN_BORROWED,
                        actor_user_id=borrower_id,
                        target_user_id=lender_id,
                        details={"due_at": due_at.isoformat(), "borrow_anyway": borrow_anyway},
                    ),
                    at=now,
                )
                dispatch(
                    self.sink,
                    [
                        NotificationIntent(
                            user_id=lender_id,
                            kind="LOAN_BORROWED",
                            title="Book borrowed",
                            message="A friend borrowed a book from your library.",
                            event_key=event_key(loan.id, "borrowed", now),
                            loan_id=loan.id,
                            meta={"book_id": book_id, "borrower_id": borrower_id},
                        )
                    ],
                )

            record_loan_transition(AuditAction.LOAN_BORROWED.value)
            logger.info("Loan %s borrowed by %s from %s", loan.id, borrower_id, lender_id)
            return Loan.model_validate(loan)

    # Transitions

    def apply_transition(
        self, loan: LoanDB, transition: LoanTransition, *, strict: bool = True
    ) -> bool:
        """
        Commit a planned transition under its compare-and-set guard.

        Returns False when the guard found the loan already moved on and
        ``strict`` is off; with ``strict`` on that raises ``InvalidStateError``.
        Nothing is written in either case.
        """
        now = self.now()
        with atomic(self.session, f"loan_{transition.target_status.value.lower()}"):
            values = {key: _to_column(value) for key, value in transition.changes.items()}
            result = self.session.execute(
                update(LoanDB)
                .where(
                    LoanDB.id == transition.loan_id,
                    LoanDB.status == LoanStatusEnum(transition.expected_status.value),
                )
                .values(**values, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if strict:
                    raise InvalidStateError(
                        "Loan changed state before this action could complete",
                        details={"loan_id": transition.loan_id},
                    )
                logger.debug(
                    "Loan %s already left %s", transition.loan_id, transition.expected_status.value
                )
                return False

            if transition.grant_access:
                self.library.grant_for_loan(loan.borrower_id, loan.book_id)
            if transition.release_access:
                self.library.release_for_loan(loan.borrower_id, loan.book_id)

            self.audit.record(transition.loan_id, transition.audit, at=now)
            if transition.target_status == LoanStatus.EXPIRED:
                self._expire_pending_renewals(transition.loan_id, now)
            dispatch(self.sink, transition.notifications)

        self.session.refresh(loan)
        record_loan_transition(transition.audit.action.value)
        logger.info(
            "Loan %s %s -> %s",
            transition.loan_id,
            transition.expected_status.value,
            transition.target_status.value,
        )
        return True

    def _expire_pending_renewals(self, loan_id: str, now: datetime) -> None:
        """Cascade: a loan's PENDING renewal expires with it."""
        pending = self.session.execute(
            select(RenewalDB).where(
                RenewalDB.loan_id == loan_id, RenewalDB.status == RenewalStatusEnum.PENDING
            )
        ).scalars().all()
        for renewal in pending:
            renewal.status = RenewalStatusEnum.EXPIRED
            renewal.reviewed_at = now
            renewal.updated_at = now
            self.audit.record(
                loan_id,
                AuditEntry(
                    action=AuditAction.RENEWAL_EXPIRED,
                    actor_user_id=None,
                    target_user_id=renewal.requester_user_id,
                    details={"renewal_id": renewal.id, "status": RenewalStatus.EXPIRED.value},
                ),
                at=now,
            )

    def accept(self, loan_id: str, actor_id: str, *, borrow_anyway: bool = False) -> Loan:
        """
        Borrower accepts a PENDING offer.

        Raises:
            ForbiddenError: ``actor_id`` is not the borrower
            InvalidStateError: The loan is not PENDING (or another accept won)
            AlreadyOwnedError: The borrower has the book and did not pass
                ``borrow_anyway``
        """
        with trace_repository_operation("loans", "accept", loan_id=loan_id):
            loan = self.get_row(loan_id)
            has_access = self.library.get_record(loan.borrower_id, loan.book_id) is not None
            transition = plan_accept(
                loan,
                actor_id,
                self.now(),
                has_library_access=has_access,
                borrow_anyway=borrow_anyway,
            )
            self.apply_transition(loan, transition)
            return Loan.model_validate(loan)

    def reject(self, loan_id: str, actor_id: str) -> Loan:
        with trace_repository_operation("loans", "reject", loan_id=loan_id):
            loan = self.get_row(loan_id)
            self.apply_transition(loan, plan_reject(loan, actor_id, self.now()))
            return Loan.model_validate(loan)

    def cancel(self, loan_id: str, actor_id: str) -> Loan:
        """Lender withdraws a PENDING offer."""
        with trace_repository_operation("loans", "cancel", loan_id=loan_id):
            loan = self.get_row(loan_id)
            self.apply_transition(loan, plan_cancel(loan, actor_id, self.now()))
            return Loan.model_validate(loan)

    def revoke(self, loan_id: str, actor_id: str) -> Loan:
        """Lender ends an ACTIVE loan early."""
        with trace_repository_operation("loans", "revoke", loan_id=loan_id):
            loan = self.get_row(loan_id)
            transition = plan_revoke(loan, actor_id, self.now(), self.config.export_window_days)
            self.apply_transition(loan, transition)
            return Loan.model_validate(loan)

    def return_loan(self, loan_id: str, actor_id: str) -> Loan:
        """Borrower hands an ACTIVE loan back."""
        with trace_repository_operation("loans", "return", loan_id=loan_id):
            loan = self.get_row(loan_id)
            transition = plan_return(loan, actor_id, self.now(), self.config.export_window_days)
            self.apply_transition(loan, transition)
            return Loan.model_validate(loan)

    def expire_if_needed(self, loan_id: str) -> bool:
        """
        Expire the loan if it is ACTIVE and past its effective end.

        Safe to call any number of times: only the call that wins the
        compare-and-set writes anything. Returns True for that call.
        """
        loan = self.get_row(loan_id)
        transition = plan_expire(loan, self.now(), self.config.export_window_days)
        if transition is None:
            return False
        with trace_repository_operation("loans", "expire", loan_id=loan_id):
            return self.apply_transition(loan, transition, strict=False)

    def expire_overdue_for(self, user_id: str) -> int:
        """Expire every stale ACTIVE loan the user is a party to."""
        now = self.now()
        candidates = safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB.id).where(
                    or_(LoanDB.lender_id == user_id, LoanDB.borrower_id == user_id),
                    LoanDB.status == LoanStatusEnum.ACTIVE,
                    LoanDB.due_at < now,
                )
            )
            .scalars()
            .all(),
            "Failed to find overdue loans",
        )
        return sum(1 for loan_id in candidates if self.expire_if_needed(loan_id))

    def ensure_export_window(self, loan: LoanDB, actor_id: str) -> None:
        """
        Raise unless ``actor_id`` may export annotations for ``loan`` now.

        The borrower may export while the loan is ACTIVE and, once it has
        ended, until ``export_available_until``.
        """
        if actor_id != loan.borrower_id:
            raise ForbiddenError("Only the borrower can export annotations from this loan")
        status = LoanStatus(loan.status)
        if status == LoanStatus.ACTIVE:
            return
        if status not in ENDED_STATUSES:
            raise InvalidStateError(
                f"Annotations cannot be exported from a {status.value.lower()} loan",
                details={"loan_id": loan.id},
            )
        if loan.export_available_until is None or loan.export_available_until < self.now():
            raise InvalidStateError(
                "The export window for this loan has closed",
                details={
                    "loan_id": loan.id,
                    "export_available_until": loan.export_available_until.isoformat()
                    if loan.export_available_until
                    else None,
                },
            )
