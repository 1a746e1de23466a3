"""
SQLAlchemy database schema for the Shelf Lending server.

These tables back the loan engine:
1. ``loans`` and ``loan_renewals`` hold the two state machines
2. ``library_access`` is the "book is in my library" fact shared with the
   purchase/upload flow
3. ``highlights`` and ``notes`` carry the write-time visibility scope
4. ``loan_audit_events`` is the append-only transition log
5. ``users``, ``books``, ``lending_templates`` and ``notifications`` are the
   collaborator data the engine reads or writes through narrow interfaces

Uniqueness rules that must survive concurrent writers (one ACTIVE and one
PENDING loan per triple, one PENDING renewal per loan) are partial unique
indexes so they are enforced by the database, not by calling code.
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class LoanStatusEnum(str, enum.Enum):
    """Database enum for loan status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class RenewalStatusEnum(str, enum.Enum):
    """Database enum for renewal request status."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class AnnotationVisibilityEnum(str, enum.Enum):
    """Database enum for the borrower annotation policy of a loan."""

    PRIVATE = "PRIVATE"
    SHARED_WITH_LENDER = "SHARED_WITH_LENDER"


class AnnotationScopeEnum(str, enum.Enum):
    """Database enum for the write-time scope of a highlight or note."""

    OWNER = "OWNER"
    LENDER_VISIBLE = "LENDER_VISIBLE"
    PRIVATE_BORROWER = "PRIVATE_BORROWER"


class LibraryAccessSourceEnum(str, enum.Enum):
    """How a book came to be in a user's library."""

    UPLOAD = "UPLOAD"
    LOAN = "LOAN"


class User(Base):
    """
    Users table - the identities the engine receives from the auth layer.

    Only what an export needs to name the parties is stored here.
    """

    __tablename__ = "users"

    id = Column(String(50), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(200), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (CheckConstraint("id LIKE 'user_%'", name="check_user_id_format"),)


class Book(Base):
    """
    Books table - the catalog entry a loan points at.

    Book content lives in external storage; the engine only needs a title
    and author for export summaries.
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    title = Column(String(500), nullable=False)
    author = Column(String(300), nullable=True)
    language = Column(String(20), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (CheckConstraint("id LIKE 'book_%'", name="check_book_id_format"),)


class LibraryAccessRecord(Base):
    """
    Library access table - "this book is in this user's library".

    Written by two paths: the upload/purchase flow (source UPLOAD) and the
    loan engine on accept (source LOAN). The loan engine deletes a row only
    when the accepting loan recorded that it created it.
    """

    __tablename__ = "library_access"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    source = Column(
        Enum(LibraryAccessSourceEnum),
        nullable=False,
        default=LibraryAccessSourceEnum.UPLOAD,
    )
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="unique_library_access_user_book"),
        Index("idx_library_access_book", "book_id"),
    )


class LendingTemplate(Base):
    """Lending templates table - a lender's standing defaults for new loans."""

    __tablename__ = "lending_templates"

    id = Column(String(50), primary_key=True)
    user_id = Column(
        String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    name = Column(String(200), nullable=False, default="Default lending template")
    duration_days = Column(Integer, nullable=False, default=14)
    grace_days = Column(Integer, nullable=False, default=0)
    remind_before_days = Column(Integer, nullable=False, default=3)
    can_add_highlights = Column(Boolean, nullable=False, default=True)
    can_edit_highlights = Column(Boolean, nullable=False, default=True)
    can_add_notes = Column(Boolean, nullable=False, default=True)
    can_edit_notes = Column(Boolean, nullable=False, default=True)
    annotation_visibility = Column(
        Enum(AnnotationVisibilityEnum),
        nullable=False,
        default=AnnotationVisibilityEnum.PRIVATE,
    )
    share_lender_annotations = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("duration_days >= 1 AND duration_days <= 365", name="check_tpl_duration"),
        CheckConstraint("grace_days >= 0 AND grace_days <= 30", name="check_tpl_grace"),
        CheckConstraint(
            "remind_before_days >= 0 AND remind_before_days <= 30", name="check_tpl_remind"
        ),
    )


class Loan(Base):
    """
    Loans table - one lending relationship for one book between two users.

    Status changes are written with compare-and-set updates (``WHERE status =
    expected``) so two racing writers cannot both win a transition.
    """

    __tablename__ = "loans"

    id = Column(String(50), primary_key=True)
    book_id = Column(String(50), ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    lender_id = Column(String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    borrower_id = Column(String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(Enum(LoanStatusEnum), nullable=False, default=LoanStatusEnum.PENDING)
    message = Column(Text, nullable=True)

    duration_days = Column(Integer, nullable=False, default=14)
    grace_days = Column(Integer, nullable=False, default=0)
    remind_before_days = Column(Integer, nullable=False, default=3)

    requested_at = Column(DateTime, nullable=False, default=func.now())
    accepted_at = Column(DateTime, nullable=True)
    due_at = Column(DateTime, nullable=True)
    returned_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    export_available_until = Column(DateTime, nullable=True)

    created_access_on_accept = Column(Boolean, nullable=False, default=False)

    can_add_highlights = Column(Boolean, nullable=False, default=True)
    can_edit_highlights = Column(Boolean, nullable=False, default=True)
    can_add_notes = Column(Boolean, nullable=False, default=True)
    can_edit_notes = Column(Boolean, nullable=False, default=True)
    annotation_visibility = Column(
        Enum(AnnotationVisibilityEnum),
        nullable=False,
        default=AnnotationVisibilityEnum.PRIVATE,
    )
    share_lender_annotations = Column(Boolean, nullable=False, default=False)

    # Reminder markers, each set in the same unit as its notification
    due_soon_notified_at = Column(DateTime, nullable=True)
    overdue_notified_at = Column(DateTime, nullable=True)
    ended_reminder_notified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    book = relationship("Book")
    lender = relationship("User", foreign_keys=[lender_id])
    borrower = relationship("User", foreign_keys=[borrower_id])
    renewals = relationship(
        "LoanRenewal", back_populates="loan", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_loan_borrower_status", "borrower_id", "status"),
        Index("idx_loan_lender_status", "lender_id", "status"),
        Index("idx_loan_book_status", "book_id", "status"),
        Index(
            "unique_active_loan_per_triple",
            "book_id",
            "lender_id",
            "borrower_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index(
            "unique_pending_loan_per_triple",
            "book_id",
            "lender_id",
            "borrower_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        CheckConstraint("id LIKE 'loan_%'", name="check_loan_id_format"),
        CheckConstraint("lender_id <> borrower_id", name="check_loan_distinct_parties"),
        CheckConstraint("duration_days >= 1", name="check_loan_duration_positive"),
        CheckConstraint("grace_days >= 0", name="check_loan_grace_non_negative"),
        CheckConstraint("status <> 'ACTIVE' OR due_at IS NOT NULL", name="check_active_has_due"),
        CheckConstraint(
            "status NOT IN ('RETURNED', 'REVOKED', 'EXPIRED') "
            "OR export_available_until IS NOT NULL",
            name="check_ended_has_export_window",
        ),
    )


class LoanRenewal(Base):
    """Loan renewals table - due-date extension requests scoped to one loan."""

    __tablename__ = "loan_renewals"

    id = Column(String(50), primary_key=True)
    loan_id = Column(String(50), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False)
    requester_user_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    reviewer_user_id = Column(String(50), ForeignKey("users.id"), nullable=True)
    lender_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    borrower_id = Column(String(50), ForeignKey("users.id"), nullable=False)
    status = Column(Enum(RenewalStatusEnum), nullable=False, default=RenewalStatusEnum.PENDING)
    requested_extra_days = Column(Integer, nullable=False)
    previous_due_at = Column(DateTime, nullable=False)
    proposed_due_at = Column(DateTime, nullable=False)
    message = Column(Text, nullable=True)
    decision_message = Column(Text, nullable=True)
    requested_at = Column(DateTime, nullable=False, default=func.now())
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    loan = relationship("Loan", back_populates="renewals")

    __table_args__ = (
        Index("idx_renewal_loan_status", "loan_id", "status"),
        Index("idx_renewal_lender_status", "lender_id", "status"),
        Index("idx_renewal_borrower_status", "borrower_id", "status"),
        Index(
            "unique_pending_renewal_per_loan",
            "loan_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        CheckConstraint("id LIKE 'renewal_%'", name="check_renewal_id_format"),
        CheckConstraint("requested_extra_days >= 1", name="check_renewal_days_positive"),
    )


class Highlight(Base):
    """Highlights table - text ranges marked by a reader, one per range per author."""

    __tablename__ = "highlights"

    id = Column(String(50), primary_key=True)
    book_id = Column(String(50), ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id = Column(
        String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    cfi_range = Column(String(500), nullable=False)
    text = Column(Text, nullable=False)
    note = Column(Text, nullable=True)
    color = Column(String(40), nullable=True)
    context_prefix = Column(Text, nullable=True)
    context_suffix = Column(Text, nullable=True)
    chapter_href = Column(String(500), nullable=True)
    scope = Column(Enum(AnnotationScopeEnum), nullable=False, default=AnnotationScopeEnum.OWNER)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "book_id", "cfi_range", "created_by_user_id", name="unique_highlight_range_per_author"
        ),
        Index("idx_highlight_book", "book_id"),
        CheckConstraint("revision >= 1", name="check_highlight_revision_positive"),
    )


class Note(Base):
    """Notes table - free-form reader notes, optionally anchored at a location."""

    __tablename__ = "notes"

    id = Column(String(50), primary_key=True)
    book_id = Column(String(50), ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id = Column(
        String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    cfi = Column(String(500), nullable=True)
    text = Column(Text, nullable=False)
    message = Column(Text, nullable=True)
    scope = Column(Enum(AnnotationScopeEnum), nullable=False, default=AnnotationScopeEnum.OWNER)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_note_book", "book_id"),
        CheckConstraint("revision >= 1", name="check_note_revision_positive"),
    )


class LoanAuditEvent(Base):
    """
    Loan audit table - one immutable row per state transition.

    Rows are only ever inserted; the listeners below refuse updates and
    deletes issued through the ORM.
    """

    __tablename__ = "loan_audit_events"

    id = Column(String(50), primary_key=True)
    loan_id = Column(String(50), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False)
    actor_user_id = Column(String(50), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    target_user_id = Column(String(50), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(50), nullable=False)
    details_json = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (Index("idx_audit_loan_created", "loan_id", "created_at"),)


class Notification(Base):
    """
    Notifications table - the default notification sink.

    ``(user_id, event_key)`` is unique so a re-sent event overwrites rather
    than duplicates.
    """

    __tablename__ = "notifications"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    loan_id = Column(String(50), ForeignKey("loans.id", ondelete="SET NULL"), nullable=True)
    event_key = Column(String(200), nullable=False)
    kind = Column(String(50), nullable=False)
    title = Column(String(300), nullable=False)
    message = Column(Text, nullable=False)
    payload_json = Column(Text, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "event_key", name="unique_notification_event"),
        Index("idx_notification_user_created", "user_id", "created_at"),
    )


@event.listens_for(LoanAuditEvent, "before_update")
def audit_event_before_update(mapper, connection, target):  # noqa: ARG001
    """Audit events are append-only."""
    raise ValueError(f"Audit event {target.id} is immutable")


@event.listens_for(LoanAuditEvent, "before_delete")
def audit_event_before_delete(mapper, connection, target):  # noqa: ARG001
    """Audit events are never deleted through the ORM."""
    raise ValueError(f"Audit event {target.id} cannot be deleted")
