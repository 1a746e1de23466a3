"""Tests for the annotation export snapshot and its window."""

from datetime import timedelta

import pytest

from conftest import BOOK, BORROWER, LENDER
from shelf_lending.database.annotation_repository import HighlightCreateSchema, NoteCreateSchema
from shelf_lending.database.repository import ForbiddenError, InvalidStateError
from shelf_lending.models.export import EXPORT_SCHEMA_VERSION, canonical_json, verify_export


@pytest.fixture
def annotated_loan(annotations, active_loan, clock):
    loan = active_loan()
    annotations.create_highlight(
        LENDER, BOOK, HighlightCreateSchema(cfi_range="epubcfi(/6/2)", text="lender's")
    )
    clock.advance(minutes=1)
    annotations.create_highlight(
        BORROWER,
        BOOK,
        HighlightCreateSchema(cfi_range="epubcfi(/6/4)", text="I must not fear", color="blue"),
    )
    annotations.create_note(BORROWER, BOOK, NoteCreateSchema(text="Litany", cfi="epubcfi(/6/4)"))
    return loan


class TestExportPayload:
    def test_export_contains_borrowers_annotations(self, exports, annotated_loan):
        payload = exports.export(annotated_loan.id, BORROWER)

        assert payload["schemaVersion"] == EXPORT_SCHEMA_VERSION
        assert payload["loan"]["id"] == annotated_loan.id
        assert payload["loan"]["status"] == "ACTIVE"
        assert payload["lender"]["id"] == LENDER
        assert payload["borrower"]["displayName"] == "Boris"
        assert payload["book"]["title"] == "Dune"
        assert [h["text"] for h in payload["highlights"]] == ["I must not fear"]
        assert payload["highlights"][0]["cfiRange"] == "epubcfi(/6/4)"
        assert [n["text"] for n in payload["notes"]] == ["Litany"]

    def test_integrity_hash_verifies(self, exports, annotated_loan):
        payload = exports.export(annotated_loan.id, BORROWER)

        assert payload["integrity"]["algorithm"] == "sha256"
        assert len(payload["integrity"]["hash"]) == 64
        assert verify_export(payload) is True

    def test_tampering_breaks_integrity(self, exports, annotated_loan):
        payload = exports.export(annotated_loan.id, BORROWER)
        payload["highlights"][0]["text"] = "I must fear"

        assert verify_export(payload) is False

    def test_missing_integrity_block(self, exports, annotated_loan):
        payload = exports.export(annotated_loan.id, BORROWER)
        del payload["integrity"]

        assert verify_export(payload) is False

    def test_canonical_form_ignores_key_order_and_integrity(self):
        first = {"b": 1, "a": [1, 2], "integrity": {"hash": "x"}}
        second = {"a": [1, 2], "b": 1}

        assert canonical_json(first) == canonical_json(second) == '{"a":[1,2],"b":1}'


class TestExportWindow:
    def test_only_borrower_can_export(self, exports, annotated_loan):
        with pytest.raises(ForbiddenError):
            exports.export(annotated_loan.id, LENDER)

    def test_pending_loan_has_nothing_to_export(self, exports, loans):
        offer = loans.request(LENDER, BORROWER, BOOK)
        with pytest.raises(InvalidStateError):
            exports.export(offer.id, BORROWER)

    def test_export_after_return_within_window(self, exports, loans, annotated_loan, clock):
        clock.advance(days=1)
        loans.return_loan(annotated_loan.id, BORROWER)
        clock.advance(days=13)

        payload = exports.export(annotated_loan.id, BORROWER)
        assert payload["loan"]["status"] == "RETURNED"
        assert payload["loan"]["endedAt"] is not None
        assert len(payload["highlights"]) == 1

    def test_export_after_window_closes(self, exports, loans, annotated_loan, clock):
        clock.advance(days=1)
        loans.revoke(annotated_loan.id, LENDER)
        clock.advance(days=14, seconds=1)

        with pytest.raises(InvalidStateError) as exc_info:
            exports.export(annotated_loan.id, BORROWER)
        assert exc_info.value.details["loan_id"] == annotated_loan.id

    def test_overdue_loan_is_expired_before_export(self, exports, loans, annotated_loan, clock):
        clock.set(annotated_loan.due_at + timedelta(days=1))

        payload = exports.export(annotated_loan.id, BORROWER)

        assert payload["loan"]["status"] == "EXPIRED"
        assert loans.get(annotated_loan.id).export_available_until == clock() + timedelta(days=14)
