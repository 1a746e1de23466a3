"""Tests for annotation scopes, loan capabilities, revisions and visibility."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import BOOK, BORROWER, LENDER, OTHER
from shelf_lending.database.annotation_repository import (
    HighlightCreateSchema,
    HighlightUpdateSchema,
    NoteCreateSchema,
    NoteUpdateSchema,
)
from shelf_lending.database.repository import ConflictError, ForbiddenError, NotFoundError
from shelf_lending.models.annotation import AnnotationScope
from shelf_lending.models.loan import AnnotationVisibility


def highlight(cfi: str = "epubcfi(/6/4!/4/2,/1:0,/1:24)", text: str = "The spice must flow"):
    return HighlightCreateSchema(cfi_range=cfi, text=text, color="yellow")


class TestAnnotationScope:
    def test_owner_annotations_are_owner_scoped(self, annotations):
        created = annotations.create_highlight(LENDER, BOOK, highlight())

        assert created.id.startswith("highlight_")
        assert created.scope == AnnotationScope.OWNER
        assert created.revision == 1

    def test_private_loan_gives_private_scope(self, annotations, active_loan):
        active_loan()
        created = annotations.create_note(BORROWER, BOOK, NoteCreateSchema(text="Arrakis"))

        assert created.scope == AnnotationScope.PRIVATE_BORROWER

    def test_shared_loan_gives_lender_visible_scope(self, annotations, active_loan):
        active_loan(annotation_visibility=AnnotationVisibility.SHARED_WITH_LENDER)
        created = annotations.create_highlight(BORROWER, BOOK, highlight())

        assert created.scope == AnnotationScope.LENDER_VISIBLE

    def test_scope_survives_loan_end(self, annotations, loans, active_loan, clock):
        loan = active_loan()
        created = annotations.create_highlight(BORROWER, BOOK, highlight())
        clock.advance(days=1)
        loans.return_loan(loan.id, BORROWER)

        visible = annotations.list_visible(LENDER, BOOK)
        assert [h.scope for h in visible.highlights if h.id == created.id] == [
            AnnotationScope.PRIVATE_BORROWER
        ]

    def test_resave_same_range_updates_in_place(self, annotations, clock):
        first = annotations.create_highlight(LENDER, BOOK, highlight())
        clock.advance(minutes=5)
        second = annotations.create_highlight(
            LENDER, BOOK, HighlightCreateSchema(cfi_range=first.cfi_range, text="Fear is")
        )

        assert second.id == first.id
        assert second.revision == 2
        assert second.text == "Fear is"


class TestAnnotationAccess:
    def test_no_access_cannot_annotate(self, annotations):
        with pytest.raises(ForbiddenError) as exc_info:
            annotations.create_highlight(OTHER, BOOK, highlight())
        assert exc_info.value.code == "NO_ACCESS"

    def test_trashed_book_cannot_be_annotated(self, annotations, library):
        library.move_to_trash(LENDER, BOOK)
        with pytest.raises(ForbiddenError) as exc_info:
            annotations.create_note(LENDER, BOOK, NoteCreateSchema(text="later"))
        assert exc_info.value.code == "BOOK_IN_TRASH"

    def test_loan_can_withhold_adding_highlights(self, annotations, active_loan):
        active_loan(can_add_highlights=False)

        with pytest.raises(ForbiddenError) as exc_info:
            annotations.create_highlight(BORROWER, BOOK, highlight())
        assert exc_info.value.capability == "ADD_HIGHLIGHTS"
        assert exc_info.value.details["capability"] == "ADD_HIGHLIGHTS"

    def test_loan_can_withhold_adding_notes(self, annotations, active_loan):
        active_loan(can_add_notes=False)

        with pytest.raises(ForbiddenError) as exc_info:
            annotations.create_note(BORROWER, BOOK, NoteCreateSchema(text="nope"))
        assert exc_info.value.capability == "ADD_NOTES"

    def test_loan_can_withhold_editing(self, annotations, active_loan):
        active_loan(can_edit_highlights=False)
        created = annotations.create_highlight(BORROWER, BOOK, highlight())

        with pytest.raises(ForbiddenError) as exc_info:
            annotations.update_highlight(BORROWER, created.id, HighlightUpdateSchema(color="red"))
        assert exc_info.value.capability == "EDIT_HIGHLIGHTS"

        with pytest.raises(ForbiddenError):
            annotations.create_highlight(BORROWER, BOOK, highlight(text="again"))

    def test_owner_is_never_restricted_by_loans(self, annotations, active_loan):
        active_loan(can_add_highlights=False, can_edit_highlights=False)

        created = annotations.create_highlight(LENDER, BOOK, highlight())
        updated = annotations.update_highlight(
            LENDER, created.id, HighlightUpdateSchema(note="mine")
        )
        assert updated.note == "mine"

    def test_only_author_can_edit(self, annotations):
        created = annotations.create_highlight(LENDER, BOOK, highlight())

        with pytest.raises(ForbiddenError):
            annotations.update_highlight(BORROWER, created.id, HighlightUpdateSchema(color="red"))

    def test_missing_annotation(self, annotations):
        with pytest.raises(NotFoundError):
            annotations.delete_note(LENDER, "note_missing")


class TestRevisions:
    def test_stale_revision_conflicts_and_leaves_row_unchanged(self, annotations, active_loan):
        active_loan()
        created = annotations.create_highlight(BORROWER, BOOK, highlight(text="original"))

        # another client edits first
        bumped = annotations.update_highlight(
            BORROWER, created.id, HighlightUpdateSchema(text="from tablet"), expected_revision=1
        )
        assert bumped.revision == 2

        with pytest.raises(ConflictError) as exc_info:
            annotations.update_highlight(
                BORROWER, created.id, HighlightUpdateSchema(text="from phone"), expected_revision=1
            )
        assert exc_info.value.current_revision == 2
        assert exc_info.value.details["current_revision"] == 2

        stored = annotations.list_visible(BORROWER, BOOK).highlights
        assert [(h.text, h.revision) for h in stored] == [("from tablet", 2)]

    def test_update_without_expected_revision(self, annotations):
        created = annotations.create_note(LENDER, BOOK, NoteCreateSchema(text="draft"))
        updated = annotations.update_note(LENDER, created.id, NoteUpdateSchema(text="final"))

        assert updated.text == "final"
        assert updated.revision == 2

    def test_partial_update_keeps_other_fields(self, annotations):
        created = annotations.create_highlight(LENDER, BOOK, highlight())
        updated = annotations.update_highlight(
            LENDER, created.id, HighlightUpdateSchema(note="remember this")
        )

        assert updated.text == created.text
        assert updated.color == "yellow"
        assert updated.note == "remember this"

    def test_delete_checks_revision(self, annotations):
        created = annotations.create_note(LENDER, BOOK, NoteCreateSchema(text="draft"))
        annotations.update_note(LENDER, created.id, NoteUpdateSchema(message="edited"))

        with pytest.raises(ConflictError):
            annotations.delete_note(LENDER, created.id, expected_revision=1)

        annotations.delete_note(LENDER, created.id, expected_revision=2)
        assert annotations.list_visible(LENDER, BOOK).notes == []

    @pytest.mark.parametrize("schema", [HighlightUpdateSchema, NoteUpdateSchema])
    def test_text_cannot_be_set_to_null(self, schema):
        with pytest.raises(ValidationError, match="text cannot be null"):
            schema(text=None)

        assert schema().model_dump(exclude_unset=True) == {}


class TestVisibility:
    @pytest.fixture
    def lender_highlight(self, annotations):
        return annotations.create_highlight(LENDER, BOOK, highlight(cfi="epubcfi(/6/2)"))

    def test_private_borrower_annotations_hidden_while_active(
        self, annotations, active_loan, lender_highlight
    ):
        active_loan()
        private = annotations.create_highlight(BORROWER, BOOK, highlight(cfi="epubcfi(/6/8)"))

        lender_view = {h.id for h in annotations.list_visible(LENDER, BOOK).highlights}
        assert lender_view == {lender_highlight.id}

        borrower_view = {h.id for h in annotations.list_visible(BORROWER, BOOK).highlights}
        assert borrower_view == {private.id}

    def test_private_annotations_visible_to_lender_after_loan_ends(
        self, annotations, loans, active_loan, clock, lender_highlight
    ):
        loan = active_loan()
        private = annotations.create_highlight(BORROWER, BOOK, highlight(cfi="epubcfi(/6/8)"))
        clock.advance(days=2)
        loans.return_loan(loan.id, BORROWER)

        lender_view = {h.id for h in annotations.list_visible(LENDER, BOOK).highlights}
        assert lender_view == {lender_highlight.id, private.id}

    def test_expiry_on_read_reveals_private_annotations(
        self, annotations, active_loan, clock, lender_highlight
    ):
        loan = active_loan()
        private = annotations.create_note(BORROWER, BOOK, NoteCreateSchema(text="secret"))
        clock.set(loan.due_at + timedelta(hours=1))

        lender_notes = {n.id for n in annotations.list_visible(LENDER, BOOK).notes}
        assert lender_notes == {private.id}

    def test_shared_loan_shows_borrower_annotations_to_lender(
        self, annotations, active_loan, lender_highlight
    ):
        active_loan(annotation_visibility=AnnotationVisibility.SHARED_WITH_LENDER)
        shared = annotations.create_highlight(BORROWER, BOOK, highlight(cfi="epubcfi(/6/8)"))

        lender_view = {h.id for h in annotations.list_visible(LENDER, BOOK).highlights}
        assert lender_view == {lender_highlight.id, shared.id}

    def test_borrower_sees_lender_annotations_when_shared(
        self, annotations, active_loan, lender_highlight
    ):
        active_loan(share_lender_annotations=True)

        borrower_view = {h.id for h in annotations.list_visible(BORROWER, BOOK).highlights}
        assert borrower_view == {lender_highlight.id}

    def test_borrower_does_not_see_lender_annotations_by_default(
        self, annotations, active_loan, lender_highlight
    ):
        active_loan()
        assert annotations.list_visible(BORROWER, BOOK).highlights == []

    def test_borrowers_do_not_see_each_other(self, annotations, active_loan):
        active_loan(share_lender_annotations=True)
        active_loan(borrower_id=OTHER, share_lender_annotations=True)
        boris = annotations.create_highlight(BORROWER, BOOK, highlight(cfi="epubcfi(/6/8)"))
        olga = annotations.create_highlight(OTHER, BOOK, highlight(cfi="epubcfi(/6/10)"))

        assert {h.id for h in annotations.list_visible(BORROWER, BOOK).highlights} == {boris.id}
        assert {h.id for h in annotations.list_visible(OTHER, BOOK).highlights} == {olga.id}

    def test_no_access_cannot_list(self, annotations):
        with pytest.raises(ForbiddenError):
            annotations.list_visible(OTHER, BOOK)
