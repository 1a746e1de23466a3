"""
Entitlement resolver: may this user open this book right now?

Every read of loan-gated data calls ``resolve`` first. Resolution is
read-only unless the user's active borrow loan has passed its effective
end, in which case that loan is expired (in its own unit) before the
answer is computed.
"""

import logging

from ..models.library import Entitlement, LibraryAccess
from ..models.loan import Loan, is_past_effective_end
from ..observability.context import trace_repository_operation
from .loan_repository import LoanRepository
from .repository import BaseRepository

logger = logging.getLogger(__name__)


class EntitlementResolver(BaseRepository):
    """Derives reading access from loan state and library records."""

    def __init__(self, session, *, loans: LoanRepository | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.loans = loans or LoanRepository(session, clock=self.clock, config=self.config)

    def resolve(self, user_id: str, book_id: str) -> Entitlement:
        with trace_repository_operation("entitlements", "resolve", book_id=book_id):
            loan = self.loans.get_active_borrow_loan(user_id, book_id)
            if loan is not None and is_past_effective_end(loan, self.now()):
                logger.info("Loan %s is past its effective end; expiring on read", loan.id)
                self.loans.expire_if_needed(loan.id)
                loan = self.loans.get_active_borrow_loan(user_id, book_id)

            record = self.loans.library.get_record(user_id, book_id)
            return Entitlement(
                user_id=user_id,
                book_id=book_id,
                library_access=LibraryAccess.model_validate(record) if record else None,
                active_borrow_loan=Loan.model_validate(loan) if loan else None,
            )

    def require_access(self, user_id: str, book_id: str) -> Entitlement:
        """Resolve and raise ``ForbiddenError`` (NO_ACCESS or BOOK_IN_TRASH) if unreadable."""
        entitlement = self.resolve(user_id, book_id)
        entitlement.require_access()
        return entitlement
