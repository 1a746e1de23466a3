"""
Audit trail repository.

``record`` only stages a row in the caller's session; it never commits.
Transitions call it inside their own atomic unit so the state change and
its audit event land together or not at all.
"""

import json
from datetime import datetime

from sqlalchemy import func, or_, select

from ..models.audit import AuditEntry, AuditEvent
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .schema import Loan as LoanDB
from .schema import LoanAuditEvent as AuditDB
from .session import safe_query


class AuditTrail(BaseRepository):
    """Append-only log of loan and renewal transitions."""

    id_prefix = "audit"

    def record(
        self,
        loan_id: str,
        entry: AuditEntry,
        *,
        at: datetime | None = None,
    ) -> AuditDB:
        """Stage one audit event for ``loan_id`` in the current unit."""
        row = AuditDB(
            id=self.new_id(),
            loan_id=loan_id,
            actor_user_id=entry.actor_user_id,
            target_user_id=entry.target_user_id,
            action=entry.action.value,
            details_json=json.dumps(entry.details, sort_keys=True) if entry.details else None,
            created_at=at or self.now(),
        )
        self.session.add(row)
        return row

    def list_for_loan(self, loan_id: str) -> list[AuditEvent]:
        """All events of one loan, oldest first."""
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(AuditDB)
                .where(AuditDB.loan_id == loan_id)
                .order_by(AuditDB.created_at, AuditDB.id)
            )
            .scalars()
            .all(),
            f"Failed to list audit events for loan {loan_id}",
        )
        return [AuditEvent.model_validate(row) for row in rows]

    def list_for_user(
        self, user_id: str, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[AuditEvent]:
        """Events of every loan the user is lender or borrower on, newest first."""
        pagination = pagination or PaginationParams()
        pagination.validate_params()

        party_loans = select(LoanDB.id).where(
            or_(LoanDB.lender_id == user_id, LoanDB.borrower_id == user_id)
        )
        query = select(AuditDB).where(AuditDB.loan_id.in_(party_loans))

        total = safe_query(
            self.session,
            lambda s: s.execute(select(func.count()).select_from(query.subquery())).scalar() or 0,
            "Failed to count audit events",
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                query.order_by(AuditDB.created_at.desc(), AuditDB.id)
                .offset(pagination.offset)
                .limit(pagination.page_size)
            )
            .scalars()
            .all(),
            "Failed to list audit events",
        )
        return PaginatedResponse[AuditEvent].build(
            [AuditEvent.model_validate(row) for row in rows], total, pagination
        )
