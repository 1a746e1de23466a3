"""
Tests for the lending MCP tools.

The handlers are called the way the server calls them: a raw arguments
dict in, an MCP response dict out. Failures never raise; they come back
with ``isError`` and a machine-readable ``error.code``.
"""

from conftest import BOOK, BORROWER, LENDER, OTHER, OTHER_BOOK
from shelf_lending.database.library_repository import LibraryRepository
from shelf_lending.database.notification_repository import NotificationRepository
from shelf_lending.tools import all_tools
from shelf_lending.tools.account import (
    mark_notification_read_handler,
    run_maintenance_sweep_handler,
    update_lending_template_handler,
)
from shelf_lending.tools.annotations import (
    create_highlight_handler,
    create_note_handler,
    delete_note_handler,
    update_highlight_handler,
)
from shelf_lending.tools.loans import (
    accept_loan_handler,
    borrow_from_library_handler,
    cancel_loan_handler,
    export_loan_handler,
    reject_loan_handler,
    request_loan_handler,
    return_loan_handler,
    revoke_loan_handler,
)
from shelf_lending.tools.renewals import (
    approve_renewal_handler,
    cancel_renewal_handler,
    deny_renewal_handler,
    request_renewal_handler,
)


async def offer(book_id: str = BOOK, borrower_id: str = BORROWER, **terms) -> dict:
    arguments = {"actor_id": LENDER, "borrower_id": borrower_id, "book_id": book_id}
    if terms:
        arguments["terms"] = terms
    result = await request_loan_handler(arguments)
    return result["data"]["loan"]


async def lend(book_id: str = BOOK, **terms) -> dict:
    loan = await offer(book_id, **terms)
    result = await accept_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})
    return result["data"]["loan"]


class TestToolRegistry:
    def test_every_tool_is_described(self):
        names = [tool["name"] for tool in all_tools]

        assert len(names) == len(set(names))
        for tool in all_tools:
            assert tool["description"]
            assert tool["inputSchema"]["type"] == "object"
            assert callable(tool["handler"])

    def test_core_operations_are_exposed(self):
        names = {tool["name"] for tool in all_tools}

        assert {
            "request_loan",
            "accept_loan",
            "reject_loan",
            "cancel_loan",
            "revoke_loan",
            "return_loan",
            "export_loan",
            "request_renewal",
            "approve_renewal",
            "deny_renewal",
            "create_highlight",
            "update_note",
            "update_lending_template",
            "run_maintenance_sweep",
        } <= names


class TestRequestLoanTool:
    async def test_request_creates_pending_loan(self, mock_get_session):
        result = await request_loan_handler(
            {
                "actor_id": LENDER,
                "borrower_id": BORROWER,
                "book_id": BOOK,
                "message": "You will love it",
                "terms": {"duration_days": 21},
            }
        )

        assert "isError" not in result
        assert result["content"][0]["type"] == "text"
        assert "Offered book 'book_dune'" in result["content"][0]["text"]
        loan = result["data"]["loan"]
        assert loan["status"] == "PENDING"
        assert loan["duration_days"] == 21
        assert loan["borrower_id"] == BORROWER

    async def test_invalid_ids_are_rejected_before_any_lookup(self, mock_get_session):
        result = await request_loan_handler(
            {"actor_id": "lena", "borrower_id": BORROWER, "book_id": BOOK}
        )

        assert result["isError"] is True
        assert result["error"]["code"] == "INVALID_PARAMS"

    async def test_out_of_range_terms(self, mock_get_session):
        result = await request_loan_handler(
            {
                "actor_id": LENDER,
                "borrower_id": BORROWER,
                "book_id": BOOK,
                "terms": {"duration_days": 0},
            }
        )

        assert result["error"]["code"] == "INVALID_PARAMS"

    async def test_lending_a_book_you_do_not_hold(self, mock_get_session):
        result = await request_loan_handler(
            {"actor_id": OTHER, "borrower_id": BORROWER, "book_id": BOOK}
        )

        assert result["isError"] is True
        assert result["error"]["code"] == "FORBIDDEN"

    async def test_lending_to_yourself(self, mock_get_session):
        result = await request_loan_handler(
            {"actor_id": LENDER, "borrower_id": LENDER, "book_id": BOOK}
        )

        assert result["isError"] is True


class TestAnswerLoanTools:
    async def test_accept_starts_the_loan(self, mock_get_session):
        loan = await lend()

        assert loan["status"] == "ACTIVE"
        assert loan["accepted_at"] is not None
        assert loan["due_at"] is not None

    async def test_already_owned_carries_retry_hint(self, mock_get_session):
        LibraryRepository(mock_get_session).add_to_library(BORROWER, BOOK)
        loan = await offer()

        result = await accept_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        assert result["error"]["code"] == "ALREADY_OWNED"
        assert result["error"]["details"]["retry_with"] == {"borrow_anyway": True}

        retried = await accept_loan_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "borrow_anyway": True}
        )
        assert retried["data"]["loan"]["status"] == "ACTIVE"

    async def test_reject(self, mock_get_session):
        loan = await offer()

        result = await reject_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        assert result["data"]["loan"]["status"] == "REJECTED"

    async def test_lender_cancels_offer(self, mock_get_session):
        loan = await offer()

        result = await cancel_loan_handler({"actor_id": LENDER, "loan_id": loan["id"]})

        assert result["data"]["loan"]["status"] == "CANCELLED"

    async def test_stranger_cannot_accept(self, mock_get_session):
        loan = await offer()

        result = await accept_loan_handler({"actor_id": OTHER, "loan_id": loan["id"]})

        assert result["error"]["code"] == "FORBIDDEN"

    async def test_unknown_loan(self, mock_get_session):
        result = await accept_loan_handler({"actor_id": BORROWER, "loan_id": "loan_missing"})

        assert result["error"]["code"] == "NOT_FOUND"

    async def test_answering_twice(self, mock_get_session):
        loan = await offer()
        await reject_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        result = await accept_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        assert result["error"]["code"] == "INVALID_STATE"

    async def test_borrow_from_library(self, mock_get_session):
        result = await borrow_from_library_handler(
            {"actor_id": BORROWER, "lender_id": LENDER, "book_id": OTHER_BOOK}
        )

        assert result["data"]["loan"]["status"] == "ACTIVE"
        assert "Due date" in result["content"][0]["text"]


class TestEndLoanTools:
    async def test_return_with_export(self, mock_get_session):
        loan = await lend()
        await create_highlight_handler(
            {
                "actor_id": BORROWER,
                "book_id": BOOK,
                "cfi_range": "epubcfi(/6/4)",
                "text": "Fear is the mind-killer",
            }
        )

        result = await return_loan_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "export_annotations": True}
        )

        assert result["data"]["loan"]["status"] == "RETURNED"
        export = result["data"]["export"]
        assert [h["text"] for h in export["highlights"]] == ["Fear is the mind-killer"]
        assert export["integrity"]["algorithm"] == "sha256"

    async def test_revoke_then_export(self, mock_get_session):
        loan = await lend()

        revoked = await revoke_loan_handler({"actor_id": LENDER, "loan_id": loan["id"]})
        exported = await export_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        assert revoked["data"]["loan"]["status"] == "REVOKED"
        assert exported["data"]["export"]["loan"]["status"] == "REVOKED"
        assert "Exported 0 highlights and 0 notes" in exported["content"][0]["text"]

    async def test_borrower_cannot_revoke(self, mock_get_session):
        loan = await lend()

        result = await revoke_loan_handler({"actor_id": BORROWER, "loan_id": loan["id"]})

        assert result["error"]["code"] == "FORBIDDEN"


class TestRenewalTools:
    async def test_request_and_approve(self, mock_get_session):
        loan = await lend()

        requested = await request_renewal_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "extra_days": 7}
        )
        renewal = requested["data"]["renewal"]
        approved = await approve_renewal_handler(
            {"actor_id": LENDER, "renewal_id": renewal["id"], "message": "Sure"}
        )

        assert renewal["status"] == "PENDING"
        assert approved["data"]["renewal"]["status"] == "APPROVED"
        assert "now due" in approved["content"][0]["text"]

    async def test_second_pending_request_conflicts(self, mock_get_session):
        loan = await lend()
        arguments = {"actor_id": BORROWER, "loan_id": loan["id"], "extra_days": 7}
        await request_renewal_handler(arguments)

        result = await request_renewal_handler(arguments)

        assert result["error"]["code"] == "CONFLICT"

    async def test_extra_days_over_the_limit(self, mock_get_session):
        loan = await lend()

        result = await request_renewal_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "extra_days": 90}
        )

        assert result["error"]["code"] == "INVALID_PARAMS"

    async def test_deny_and_cancel(self, mock_get_session):
        loan = await lend()
        first = await request_renewal_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "extra_days": 7}
        )
        denied = await deny_renewal_handler(
            {"actor_id": LENDER, "renewal_id": first["data"]["renewal"]["id"]}
        )
        second = await request_renewal_handler(
            {"actor_id": BORROWER, "loan_id": loan["id"], "extra_days": 3}
        )
        cancelled = await cancel_renewal_handler(
            {"actor_id": BORROWER, "renewal_id": second["data"]["renewal"]["id"]}
        )

        assert denied["data"]["renewal"]["status"] == "DENIED"
        assert cancelled["data"]["renewal"]["status"] == "CANCELLED"


class TestAnnotationTools:
    async def test_stale_revision_reports_current_revision(self, mock_get_session):
        created = await create_highlight_handler(
            {"actor_id": LENDER, "book_id": BOOK, "cfi_range": "epubcfi(/6/2)", "text": "Dune"}
        )
        highlight_id = created["data"]["highlight"]["id"]
        await update_highlight_handler(
            {"actor_id": LENDER, "highlight_id": highlight_id, "color": "green"}
        )

        result = await update_highlight_handler(
            {
                "actor_id": LENDER,
                "highlight_id": highlight_id,
                "text": "Arrakis",
                "expected_revision": 1,
            }
        )

        assert result["error"]["code"] == "CONFLICT"
        assert result["error"]["details"]["current_revision"] == 2

    async def test_null_text_is_invalid_params(self, mock_get_session):
        created = await create_highlight_handler(
            {"actor_id": LENDER, "book_id": BOOK, "cfi_range": "epubcfi(/6/2)", "text": "Dune"}
        )
        highlight_id = created["data"]["highlight"]["id"]

        result = await update_highlight_handler(
            {
                "actor_id": LENDER,
                "highlight_id": highlight_id,
                "text": None,
                "expected_revision": 1,
            }
        )

        assert result["error"]["code"] == "INVALID_PARAMS"
        unchanged = await update_highlight_handler(
            {"actor_id": LENDER, "highlight_id": highlight_id, "color": "blue"}
        )
        assert unchanged["data"]["highlight"]["text"] == "Dune"
        assert unchanged["data"]["highlight"]["revision"] == 2

    async def test_capability_denial(self, mock_get_session):
        await lend(can_add_notes=False)

        result = await create_note_handler(
            {"actor_id": BORROWER, "book_id": BOOK, "text": "Not allowed"}
        )

        assert result["error"]["code"] == "FORBIDDEN"
        assert result["error"]["details"]["capability"] == "ADD_NOTES"

    async def test_no_access_code(self, mock_get_session):
        result = await create_note_handler({"actor_id": OTHER, "book_id": BOOK, "text": "Hi"})

        assert result["error"]["code"] == "NO_ACCESS"

    async def test_delete_note(self, mock_get_session):
        created = await create_note_handler({"actor_id": LENDER, "book_id": BOOK, "text": "Hi"})
        note_id = created["data"]["note"]["id"]

        result = await delete_note_handler(
            {"actor_id": LENDER, "note_id": note_id, "expected_revision": 1}
        )

        assert result["data"] == {"note_id": note_id}


class TestAccountTools:
    async def test_template_applies_to_new_offers(self, mock_get_session):
        saved = await update_lending_template_handler(
            {"actor_id": LENDER, "duration_days": 30, "grace_days": 2}
        )
        loan = await offer()

        assert saved["data"]["template"]["duration_days"] == 30
        assert "30-day loans" in saved["content"][0]["text"]
        assert loan["duration_days"] == 30
        assert loan["grace_days"] == 2

    async def test_template_for_unknown_user(self, mock_get_session):
        result = await update_lending_template_handler(
            {"actor_id": "user_nobody", "duration_days": 30}
        )

        assert result["error"]["code"] == "NOT_FOUND"

    async def test_mark_notification_read(self, mock_get_session):
        await offer()
        notifications = NotificationRepository(mock_get_session).list_for_user(BORROWER)
        assert notifications

        result = await mark_notification_read_handler(
            {"actor_id": BORROWER, "notification_id": notifications[0].id}
        )
        missing = await mark_notification_read_handler(
            {"actor_id": LENDER, "notification_id": notifications[0].id}
        )

        assert "isError" not in result
        assert NotificationRepository(mock_get_session).list_for_user(
            BORROWER, unread_only=True
        ) == []
        assert missing["error"]["code"] == "NOT_FOUND"

    async def test_run_maintenance_sweep(self, mock_get_session):
        await lend()

        result = await run_maintenance_sweep_handler({"actor_id": BORROWER})

        report = result["data"]["report"]
        assert report["scanned"] == 1
        assert report["expired"] == 0
        assert report["failures"] == 0

    async def test_sweep_covers_only_the_actors_loans(self, mock_get_session):
        await lend()

        result = await run_maintenance_sweep_handler({"actor_id": OTHER})

        assert result["data"]["report"]["scanned"] == 0

    async def test_sweep_requires_a_known_actor(self, mock_get_session):
        missing = await run_maintenance_sweep_handler({})
        unknown = await run_maintenance_sweep_handler({"actor_id": "user_nobody"})

        assert missing["error"]["code"] == "INVALID_PARAMS"
        assert unknown["error"]["code"] == "NOT_FOUND"
