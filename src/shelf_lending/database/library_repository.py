"""
Library access repository.

``library_access`` is written by two paths: the upload/purchase flow and
the loan engine. The loan engine goes through ``grant_for_loan`` and
``release_for_loan`` only, and releases a record solely when the loan that
is ending created it. The staging helpers never commit; they run inside the
caller's transition unit.
"""

import logging

from sqlalchemy import delete, select

from ..models.library import LibraryAccess, LibraryAccessSource
from .repository import BaseRepository, NotFoundError
from .schema import Book as BookDB
from .schema import LibraryAccessRecord as AccessDB
from .schema import LibraryAccessSourceEnum
from .schema import User as UserDB
from .session import atomic, safe_query

logger = logging.getLogger(__name__)


class LibraryRepository(BaseRepository):
    """Reads and writes "this book is in this user's library"."""

    id_prefix = "access"

    def get_record(self, user_id: str, book_id: str) -> AccessDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(AccessDB)
                .where(AccessDB.user_id == user_id, AccessDB.book_id == book_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none(),
            "Failed to get library access record",
        )

    def get(self, user_id: str, book_id: str) -> LibraryAccess | None:
        record = self.get_record(user_id, book_id)
        return LibraryAccess.model_validate(record) if record else None

    def holds_book(self, user_id: str, book_id: str) -> bool:
        """True when the user has the book and it is not in the trash."""
        record = self.get_record(user_id, book_id)
        return record is not None and not record.is_deleted

    def require_user(self, user_id: str) -> UserDB:
        user = self.session.get(UserDB, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def require_book(self, book_id: str) -> BookDB:
        book = self.session.get(BookDB, book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    # Upload / purchase flow

    def add_to_library(
        self,
        user_id: str,
        book_id: str,
        source: LibraryAccessSource = LibraryAccessSource.UPLOAD,
    ) -> LibraryAccess:
        """Put a book in a user's library, restoring it if it was trashed."""
        with atomic(self.session, "add_to_library"):
            self.require_user(user_id)
            self.require_book(book_id)
            record = self.get_record(user_id, book_id)
            if record is None:
                record = self._stage(user_id, book_id, LibraryAccessSourceEnum(source.value))
            elif record.is_deleted:
                record.is_deleted = False
                record.deleted_at = None
                record.updated_at = self.now()
        self.session.refresh(record)
        return LibraryAccess.model_validate(record)

    def move_to_trash(self, user_id: str, book_id: str) -> LibraryAccess:
        with atomic(self.session, "move_to_trash"):
            record = self.get_record(user_id, book_id)
            if record is None:
                raise NotFoundError(f"Book {book_id} is not in the library of {user_id}")
            record.is_deleted = True
            record.deleted_at = self.now()
            record.updated_at = self.now()
        return LibraryAccess.model_validate(record)

    def restore(self, user_id: str, book_id: str) -> LibraryAccess:
        return self.add_to_library(user_id, book_id)

    # Loan engine, staged inside a transition unit

    def grant_for_loan(self, user_id: str, book_id: str) -> AccessDB:
        """Create the borrower's record on accept. Caller has checked it is absent."""
        return self._stage(user_id, book_id, LibraryAccessSourceEnum.LOAN)

    def release_for_loan(self, user_id: str, book_id: str) -> int:
        """Delete the record a loan created. Returns the number of rows removed."""
        result = self.session.execute(
            delete(AccessDB)
            .where(AccessDB.user_id == user_id, AccessDB.book_id == book_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.debug("Released library access of %s to %s", user_id, book_id)
        return result.rowcount

    def _stage(self, user_id: str, book_id: str, source: LibraryAccessSourceEnum) -> AccessDB:
        now = self.now()
        record = AccessDB(
            id=self.new_id(),
            user_id=user_id,
            book_id=book_id,
            source=source,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(record)
        return record
