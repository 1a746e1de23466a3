"""Tests for loan creation and the loan state machine against a real database."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import BOOK, BORROWER, LENDER, OTHER, OTHER_BOOK, START, BrokenSink
from shelf_lending.database.loan_repository import LoanRepository
from shelf_lending.database.repository import (
    AlreadyOwnedError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StorageError,
)
from shelf_lending.database.schema import Loan as LoanDB
from shelf_lending.database.schema import (
    LibraryAccessRecord,
    LibraryAccessSourceEnum,
    LoanAuditEvent,
    LoanStatusEnum,
)
from shelf_lending.database.template_repository import TemplateRepository
from shelf_lending.models.audit import AuditAction
from shelf_lending.models.library import LendingTemplateUpdate, LibraryAccessSource, PolicyOverride
from shelf_lending.models.loan import AnnotationVisibility, LoanStatus, plan_accept
from shelf_lending.social import StaticSocialGraph

pytestmark = pytest.mark.lifecycle


def disk_full(*args, **kwargs):
    raise OperationalError("INSERT INTO loan_audit_events ...", {}, Exception("disk full"))


def committed_state(session_factory, loan_id):
    """Status, audit actions and borrower access as another session sees them."""
    with session_factory() as session:
        status = session.get(LoanDB, loan_id).status
        actions = session.execute(
            select(LoanAuditEvent.action)
            .where(LoanAuditEvent.loan_id == loan_id)
            .order_by(LoanAuditEvent.created_at)
        ).scalars().all()
        access = session.execute(
            select(LibraryAccessRecord.source).where(
                LibraryAccessRecord.user_id == BORROWER, LibraryAccessRecord.book_id == BOOK
            )
        ).scalar_one_or_none()
        return status, list(actions), access


class TestRequestLoan:
    def test_request_creates_pending_loan(self, loans, sink):
        loan = loans.request(LENDER, BORROWER, BOOK, message="You will love it")

        assert loan.id.startswith("loan_")
        assert loan.status == LoanStatus.PENDING
        assert loan.due_at is None
        assert loan.duration_days == 14
        assert loan.message == "You will love it"
        assert sink.kinds_for(BORROWER) == ["LOAN_REQUESTED"]

        events = loans.audit.list_for_loan(loan.id)
        assert [e.action for e in events] == [AuditAction.LOAN_REQUESTED]
        assert events[0].actor_user_id == LENDER
        assert events[0].target_user_id == BORROWER

    def test_request_applies_overrides_over_template(self, loans, seeded, clock):
        TemplateRepository(seeded, clock=clock).upsert(
            LENDER, LendingTemplateUpdate(duration_days=30, grace_days=2, can_add_notes=False)
        )

        loan = loans.request(
            LENDER,
            BORROWER,
            BOOK,
            override=PolicyOverride(
                duration_days=7, annotation_visibility=AnnotationVisibility.SHARED_WITH_LENDER
            ),
        )

        assert loan.duration_days == 7
        assert loan.grace_days == 2
        assert loan.can_add_notes is False
        assert loan.annotation_visibility == AnnotationVisibility.SHARED_WITH_LENDER

    def test_rerequest_updates_pending_terms(self, loans, clock):
        first = loans.request(LENDER, BORROWER, BOOK)
        clock.advance(hours=1)
        second = loans.request(
            LENDER, BORROWER, BOOK, override=PolicyOverride(duration_days=3), message="Quick one"
        )

        assert second.id == first.id
        assert second.duration_days == 3
        assert second.requested_at == START + timedelta(hours=1)
        actions = [e.action for e in loans.audit.list_for_loan(first.id)]
        assert actions == [AuditAction.LOAN_REQUESTED, AuditAction.LOAN_REQUEST_UPDATED]

    def test_cannot_lend_to_yourself(self, loans):
        with pytest.raises(ForbiddenError):
            loans.request(LENDER, LENDER, BOOK)

    def test_lender_must_hold_the_book(self, loans):
        with pytest.raises(ForbiddenError) as exc_info:
            loans.request(OTHER, BORROWER, BOOK)
        assert exc_info.value.details == {"book_id": BOOK}

    def test_trashed_book_cannot_be_lent(self, loans, library):
        library.move_to_trash(LENDER, BOOK)
        with pytest.raises(ForbiddenError):
            loans.request(LENDER, BORROWER, BOOK)

    def test_unknown_borrower(self, loans):
        with pytest.raises(NotFoundError):
            loans.request(LENDER, "user_ghost", BOOK)

    def test_social_graph_can_block(self, seeded, clock):
        graph = StaticSocialGraph({(OTHER, LENDER)})
        repo = LoanRepository(seeded, clock=clock, social_graph=graph)

        with pytest.raises(ForbiddenError):
            repo.request(LENDER, BORROWER, BOOK)
        assert repo.request(LENDER, OTHER, BOOK).status == LoanStatus.PENDING

    def test_request_while_active_conflicts(self, loans, active_loan):
        active_loan()
        with pytest.raises(ConflictError):
            loans.request(LENDER, BORROWER, BOOK)

    def test_request_again_after_return(self, loans, active_loan, clock):
        loan = active_loan()
        clock.advance(days=1)
        loans.return_loan(loan.id, BORROWER)

        again = loans.request(LENDER, BORROWER, BOOK)
        assert again.id != loan.id
        assert again.status == LoanStatus.PENDING

    def test_failed_notification_does_not_fail_request(self, seeded, clock):
        repo = LoanRepository(seeded, clock=clock, sink=BrokenSink())
        loan = repo.request(LENDER, BORROWER, BOOK)

        assert repo.get(loan.id).status == LoanStatus.PENDING


class TestAcceptLoan:
    def test_accept_activates_and_grants_access(self, loans, library, clock, sink):
        offer = loans.request(LENDER, BORROWER, BOOK)
        clock.advance(hours=2)

        loan = loans.accept(offer.id, BORROWER)

        accepted_at = START + timedelta(hours=2)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.accepted_at == accepted_at
        assert loan.due_at == accepted_at + timedelta(days=14)
        assert loan.created_access_on_accept is True
        assert library.get(BORROWER, BOOK).source == LibraryAccessSource.LOAN
        assert sink.kinds_for(LENDER) == ["LOAN_ACCEPTED"]

    def test_only_borrower_can_accept(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        with pytest.raises(ForbiddenError):
            loans.accept(offer.id, OTHER)

    def test_accept_unknown_loan(self, loans):
        with pytest.raises(NotFoundError):
            loans.accept("loan_missing", BORROWER)

    def test_already_owned_requires_borrow_anyway(self, loans, library):
        library.add_to_library(BORROWER, BOOK)
        offer = loans.request(LENDER, BORROWER, BOOK)

        with pytest.raises(AlreadyOwnedError) as exc_info:
            loans.accept(offer.id, BORROWER)
        assert exc_info.value.code == "ALREADY_OWNED"
        assert loans.get(offer.id).status == LoanStatus.PENDING

        loan = loans.accept(offer.id, BORROWER, borrow_anyway=True)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.created_access_on_accept is False

    def test_trashed_copy_counts_as_owned(self, loans, library):
        library.add_to_library(BORROWER, BOOK)
        library.move_to_trash(BORROWER, BOOK)
        offer = loans.request(LENDER, BORROWER, BOOK)

        with pytest.raises(AlreadyOwnedError):
            loans.accept(offer.id, BORROWER)

    def test_accept_twice_is_invalid_state(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        loans.accept(offer.id, BORROWER)

        with pytest.raises(InvalidStateError):
            loans.accept(offer.id, BORROWER)

    def test_stale_accept_loses_the_race(self, loans, clock):
        offer = loans.request(LENDER, BORROWER, BOOK)
        row = loans.get_row(offer.id)
        stale = plan_accept(row, BORROWER, clock(), has_library_access=False)

        loans.accept(offer.id, BORROWER)

        with pytest.raises(InvalidStateError):
            loans.apply_transition(row, stale)
        assert loans.apply_transition(row, stale, strict=False) is False

        actions = [e.action for e in loans.audit.list_for_loan(offer.id)]
        assert actions.count(AuditAction.LOAN_ACCEPTED) == 1

    def test_concurrent_accepts_from_two_sessions(self, loans, session_factory, clock):
        offer = loans.request(LENDER, BORROWER, BOOK)
        row = loans.get_row(offer.id)
        stale = plan_accept(row, BORROWER, clock(), has_library_access=False)

        with session_factory() as other_session:
            winner = LoanRepository(other_session, clock=clock).accept(offer.id, BORROWER)
        assert winner.status == LoanStatus.ACTIVE

        with pytest.raises(InvalidStateError):
            loans.apply_transition(row, stale)
        assert loans.get(offer.id).status == LoanStatus.ACTIVE


class TestAnswerAndCancel:
    def test_reject(self, loans, sink):
        offer = loans.request(LENDER, BORROWER, BOOK)
        loan = loans.reject(offer.id, BORROWER)

        assert loan.status == LoanStatus.REJECTED
        assert loan.rejected_at is not None
        assert "LOAN_REJECTED" in sink.kinds_for(LENDER)

    def test_cancel_by_lender(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        loan = loans.cancel(offer.id, LENDER)

        assert loan.status == LoanStatus.CANCELLED
        assert loan.cancelled_at is not None

    def test_borrower_cannot_cancel(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        with pytest.raises(ForbiddenError):
            loans.cancel(offer.id, BORROWER)

    def test_rejected_loan_is_terminal(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        loans.reject(offer.id, BORROWER)

        with pytest.raises(InvalidStateError):
            loans.accept(offer.id, BORROWER)


class TestEndingLoans:
    def test_return_releases_access_and_opens_export_window(
        self, loans, library, active_loan, clock
    ):
        loan = active_loan()
        returned_at = clock.advance(days=3)

        ended = loans.return_loan(loan.id, BORROWER)

        assert ended.status == LoanStatus.RETURNED
        assert ended.returned_at == returned_at
        assert ended.export_available_until == returned_at + timedelta(days=14)
        assert library.get(BORROWER, BOOK) is None

    def test_return_keeps_borrowers_own_copy(self, loans, library, clock):
        library.add_to_library(BORROWER, BOOK)
        offer = loans.request(LENDER, BORROWER, BOOK)
        loan = loans.accept(offer.id, BORROWER, borrow_anyway=True)
        clock.advance(days=1)

        loans.return_loan(loan.id, BORROWER)

        assert library.get(BORROWER, BOOK).source == LibraryAccessSource.UPLOAD

    def test_revoke_by_lender(self, loans, active_loan, clock, sink):
        loan = active_loan()
        clock.advance(days=1)

        ended = loans.revoke(loan.id, LENDER)

        assert ended.status == LoanStatus.REVOKED
        assert ended.export_available_until is not None
        assert "LOAN_REVOKED" in sink.kinds_for(BORROWER)

    def test_borrower_cannot_revoke(self, loans, active_loan):
        loan = active_loan()
        with pytest.raises(ForbiddenError):
            loans.revoke(loan.id, BORROWER)

    def test_return_pending_loan_is_invalid(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        with pytest.raises(InvalidStateError):
            loans.return_loan(offer.id, BORROWER)

    def test_audit_trail_records_every_step(self, loans, active_loan, clock):
        loan = active_loan()
        clock.advance(days=2)
        loans.return_loan(loan.id, BORROWER)

        actions = [e.action for e in loans.audit.list_for_loan(loan.id)]
        assert actions == [
            AuditAction.LOAN_REQUESTED,
            AuditAction.LOAN_ACCEPTED,
            AuditAction.LOAN_RETURNED,
        ]
        returned = loans.audit.list_for_loan(loan.id)[-1]
        assert "export_available_until" in returned.details


class TestTransitionAtomicity:
    """A transition that fails partway leaves status, access and audit untouched."""

    def test_failed_accept_grants_nothing(self, loans, session_factory, sink, monkeypatch):
        offer = loans.request(LENDER, BORROWER, BOOK)
        monkeypatch.setattr(loans.audit, "record", disk_full)

        with pytest.raises(StorageError):
            loans.accept(offer.id, BORROWER)

        status, actions, access = committed_state(session_factory, offer.id)
        assert status == LoanStatusEnum.PENDING
        assert actions == ["LOAN_REQUESTED"]
        assert access is None
        assert "LOAN_ACCEPTED" not in sink.kinds_for(LENDER)

    def test_failed_revoke_keeps_loan_and_access(
        self, loans, active_loan, session_factory, clock, monkeypatch
    ):
        loan = active_loan()
        clock.advance(days=1)
        monkeypatch.setattr(loans.audit, "record", disk_full)

        with pytest.raises(StorageError):
            loans.revoke(loan.id, LENDER)

        status, actions, access = committed_state(session_factory, loan.id)
        assert status == LoanStatusEnum.ACTIVE
        assert actions == ["LOAN_REQUESTED", "LOAN_ACCEPTED"]
        assert access == LibraryAccessSourceEnum.LOAN

    def test_transition_succeeds_after_a_failed_attempt(self, loans, active_loan, monkeypatch):
        loan = active_loan()
        with monkeypatch.context() as patch:
            patch.setattr(loans.audit, "record", disk_full)
            with pytest.raises(StorageError):
                loans.return_loan(loan.id, BORROWER)

        ended = loans.return_loan(loan.id, BORROWER)

        assert ended.status == LoanStatus.RETURNED
        assert [e.action for e in loans.audit.list_for_loan(loan.id)][-1] == (
            AuditAction.LOAN_RETURNED
        )


class TestExpiry:
    def test_expire_if_needed_is_idempotent(self, loans, active_loan, clock, sink):
        loan = active_loan()
        clock.set(loan.due_at + timedelta(seconds=1))

        assert loans.expire_if_needed(loan.id) is True
        assert loans.expire_if_needed(loan.id) is False

        expired = loans.get(loan.id)
        assert expired.status == LoanStatus.EXPIRED
        assert expired.expired_at == loan.due_at + timedelta(seconds=1)
        actions = [e.action for e in loans.audit.list_for_loan(loan.id)]
        assert actions.count(AuditAction.LOAN_EXPIRED) == 1
        assert sink.kinds_for(BORROWER).count("LOAN_EXPIRED") == 1
        assert sink.kinds_for(LENDER).count("LOAN_EXPIRED") == 1

    def test_not_expired_within_grace(self, loans, active_loan, clock):
        loan = active_loan(grace_days=2)
        clock.set(loan.due_at + timedelta(days=1))

        assert loans.expire_if_needed(loan.id) is False
        assert loans.get(loan.id).status == LoanStatus.ACTIVE

    def test_expire_overdue_for_user(self, loans, active_loan, clock):
        first = active_loan()
        second = active_loan(book_id=OTHER_BOOK, duration_days=30)
        clock.set(first.due_at + timedelta(hours=1))

        assert loans.expire_overdue_for(BORROWER) == 1
        assert loans.get(first.id).status == LoanStatus.EXPIRED
        assert loans.get(second.id).status == LoanStatus.ACTIVE


class TestBorrowFromLibrary:
    def test_borrow_starts_active_under_template(self, loans, seeded, library, clock, sink):
        TemplateRepository(seeded, clock=clock).upsert(
            LENDER, LendingTemplateUpdate(duration_days=21)
        )

        loan = loans.borrow_from_library(BORROWER, LENDER, BOOK)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.due_at == START + timedelta(days=21)
        assert library.get(BORROWER, BOOK).source == LibraryAccessSource.LOAN
        assert sink.kinds_for(LENDER) == ["LOAN_BORROWED"]
        assert [e.action for e in loans.audit.list_for_loan(loan.id)] == [
            AuditAction.LOAN_BORROWED
        ]

    def test_borrow_owned_book_needs_borrow_anyway(self, loans, library):
        library.add_to_library(BORROWER, BOOK)

        with pytest.raises(AlreadyOwnedError):
            loans.borrow_from_library(BORROWER, LENDER, BOOK)
        loan = loans.borrow_from_library(BORROWER, LENDER, BOOK, borrow_anyway=True)
        assert loan.created_access_on_accept is False

    def test_borrow_twice_conflicts(self, loans):
        loans.borrow_from_library(BORROWER, LENDER, BOOK)
        with pytest.raises(ConflictError):
            loans.borrow_from_library(BORROWER, LENDER, BOOK)


class TestLoanListing:
    def test_lists_by_role(self, loans, active_loan):
        active_loan()
        offer = loans.request(LENDER, OTHER, OTHER_BOOK)

        assert [loan.id for loan in loans.list_for_user(OTHER, "incoming").items] == [offer.id]
        assert loans.list_for_user(LENDER, "outgoing").total == 1
        assert loans.list_for_user(BORROWER, "borrowed").total == 1
        assert loans.list_for_user(LENDER, "lent").total == 1
        assert loans.list_for_user(BORROWER, "ended").total == 0

    def test_borrowed_listing_expires_stale_loans(self, loans, active_loan, clock):
        loan = active_loan()
        clock.set(loan.due_at + timedelta(minutes=5))

        assert loans.list_for_user(BORROWER, "borrowed").total == 0
        ended = loans.list_for_user(BORROWER, "ended")
        assert [loan.status for loan in ended.items] == [LoanStatus.EXPIRED]

    def test_unknown_role(self, loans):
        with pytest.raises(ValueError):
            loans.list_for_user(BORROWER, "friends")

    def test_non_party_cannot_view(self, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        assert loans.get_for_party(offer.id, BORROWER).id == offer.id
        with pytest.raises(ForbiddenError):
            loans.get_for_party(offer.id, OTHER)
