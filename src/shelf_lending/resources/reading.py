"""Reading resources: whether a user can open a book, and what annotations they see."""

import logging
from typing import Any

from ..database.annotation_repository import AnnotationRepository
from ..database.entitlement_repository import EntitlementResolver
from ..database.session import session_scope
from ..observability import trace_resource
from .common import resource_errors

logger = logging.getLogger(__name__)


@trace_resource("entitlement")
async def get_entitlement_handler(user_id: str, book_id: str) -> dict[str, Any]:
    """Entitlement summary: ACCESSIBLE, TRASHED or NONE, and why."""
    logger.debug("MCP Resource Request - users/%s/books/%s/entitlement", user_id, book_id)
    with resource_errors("entitlement"), session_scope() as session:
        return EntitlementResolver(session).resolve(user_id, book_id).summary()


@trace_resource("annotations")
async def list_visible_annotations_handler(user_id: str, book_id: str) -> dict[str, Any]:
    """Highlights and notes on the book that the user may see."""
    with resource_errors("annotations"), session_scope() as session:
        visible = AnnotationRepository(session).list_visible(user_id, book_id)
        return visible.model_dump(mode="json")


reading_resources: list[dict[str, Any]] = [
    {
        "uri_template": "lending://users/{user_id}/books/{book_id}/entitlement",
        "name": "Book Entitlement",
        "description": (
            "Whether the user can open a book right now, through their library or an "
            "active borrow loan. A trashed book is reported separately from no access."
        ),
        "mime_type": "application/json",
        "handler": get_entitlement_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/books/{book_id}/annotations",
        "name": "Visible Annotations",
        "description": (
            "Highlights and notes on a book visible to the user. A borrower sees their "
            "own, plus the lender's when the loan shares them; private borrower "
            "annotations stay hidden while that loan is active."
        ),
        "mime_type": "application/json",
        "handler": list_visible_annotations_handler,
    },
]
