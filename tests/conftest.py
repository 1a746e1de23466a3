"""Test configuration and fixtures for the Shelf Lending server.

Every test gets:
1. An isolated SQLite database file with the full schema
2. A frozen clock, so deadlines move only when a test advances it
3. A configuration pointing at the temporary database
4. Three users and two books, with the lender owning both books
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import logfire
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from shelf_lending.clock import FixedClock
from shelf_lending.config import LendingConfig, get_config, reset_config
from shelf_lending.database.annotation_repository import AnnotationRepository
from shelf_lending.database.entitlement_repository import EntitlementResolver
from shelf_lending.database.export_repository import ExportRepository
from shelf_lending.database.library_repository import LibraryRepository
from shelf_lending.database.loan_repository import LoanRepository
from shelf_lending.database.renewal_repository import RenewalRepository
from shelf_lending.database.schema import Base, Book, User
from shelf_lending.models.library import PolicyOverride

LENDER = "user_lena"
BORROWER = "user_boris"
OTHER = "user_olga"
BOOK = "book_dune"
OTHER_BOOK = "book_emma"

START = datetime(2026, 3, 2, 9, 0, 0)


def pytest_configure(config):
    logfire.configure(send_to_logfire=False, console=False)


# === Test Database Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    """Each test gets its own database file."""
    return tmp_path / "test_lending.db"


@pytest.fixture
def test_database_url(test_db_path: Path) -> str:
    return f"sqlite:///{test_db_path}"


@pytest.fixture
def test_engine(test_database_url: str):
    engine = create_engine(
        test_database_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> sessionmaker:
    """Session factory with the same settings the server uses."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=test_engine,
    )


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# === Configuration Fixtures ===


@pytest.fixture(autouse=True)
def test_config(test_db_path: Path, monkeypatch) -> Generator[LendingConfig, None, None]:
    """Point the global configuration at the test database."""
    for key in list(os.environ):
        if key.startswith("SHELF_LENDING_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("SHELF_LENDING_DATABASE_PATH", str(test_db_path))
    monkeypatch.setenv("SHELF_LENDING_SWEEP_ENABLED", "false")
    reset_config()

    yield get_config()

    reset_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


# === Collaborators ===


class RecordingSink:
    """Notification sink that keeps what it was given."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    def notify(self, user_id, event_key, kind, title, message, loan_id=None, meta=None):
        self.sent.append(
            {
                "user_id": user_id,
                "event_key": event_key,
                "kind": kind,
                "title": title,
                "message": message,
                "loan_id": loan_id,
                "meta": meta or {},
            }
        )

    def kinds_for(self, user_id: str) -> list[str]:
        return [n["kind"] for n in self.sent if n["user_id"] == user_id]


class BrokenSink:
    """Notification sink whose delivery always fails."""

    def notify(self, *args, **kwargs):
        raise ConnectionError("notification service unavailable")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# === Seed Data ===


@pytest.fixture
def seeded(test_db_session, clock):
    """Three users and two books; the lender owns both books."""
    for user_id, name in ((LENDER, "Lena"), (BORROWER, "Boris"), (OTHER, "Olga")):
        test_db_session.add(
            User(id=user_id, email=f"{user_id}@example.com", display_name=name, created_at=START)
        )
    test_db_session.add(
        Book(id=BOOK, title="Dune", author="Frank Herbert", created_at=START, updated_at=START)
    )
    test_db_session.add(
        Book(id=OTHER_BOOK, title="Emma", author="Jane Austen", created_at=START, updated_at=START)
    )
    test_db_session.commit()

    library = LibraryRepository(test_db_session, clock=clock)
    library.add_to_library(LENDER, BOOK)
    library.add_to_library(LENDER, OTHER_BOOK)
    return test_db_session


# === Repository Fixtures ===


@pytest.fixture
def loans(seeded, clock, sink) -> LoanRepository:
    return LoanRepository(seeded, sink=sink, clock=clock)


@pytest.fixture
def renewals(seeded, loans, clock) -> RenewalRepository:
    return RenewalRepository(seeded, loans=loans, clock=clock)


@pytest.fixture
def resolver(seeded, loans, clock) -> EntitlementResolver:
    return EntitlementResolver(seeded, loans=loans, clock=clock)


@pytest.fixture
def annotations(seeded, loans, resolver, clock) -> AnnotationRepository:
    return AnnotationRepository(seeded, loans=loans, resolver=resolver, clock=clock)


@pytest.fixture
def exports(seeded, loans, clock) -> ExportRepository:
    return ExportRepository(seeded, loans=loans, clock=clock)


@pytest.fixture
def library(seeded, clock) -> LibraryRepository:
    return LibraryRepository(seeded, clock=clock)


@pytest.fixture
def active_loan(loans, clock):
    """Factory: offer ``BOOK`` to the borrower and accept it one minute later."""

    def _make(
        borrower_id: str = BORROWER,
        book_id: str = BOOK,
        **terms: Any,
    ):
        offer = loans.request(
            LENDER,
            borrower_id,
            book_id,
            override=PolicyOverride(**terms) if terms else None,
        )
        clock.advance(minutes=1)
        return loans.accept(offer.id, borrower_id)

    return _make


# === MCP Handler Fixtures ===


@pytest.fixture
def mock_get_session(seeded, monkeypatch):
    """Make tool handlers run against the seeded test session."""

    @contextmanager
    def _mock_get_session():
        yield seeded

    monkeypatch.setattr("shelf_lending.tools.common.get_session", _mock_get_session)
    return seeded


@pytest.fixture
def mock_session_scope(seeded, monkeypatch):
    """Make resource handlers run against the seeded test session."""

    @contextmanager
    def _mock_session_scope():
        yield seeded

    for module in ("loans", "reading", "account"):
        monkeypatch.setattr(f"shelf_lending.resources.{module}.session_scope", _mock_session_scope)
    return seeded
