"""Account resources: audit history, lending template and notifications."""

import logging
from typing import Any

from ..database.audit_repository import AuditTrail
from ..database.notification_repository import NotificationRepository
from ..database.template_repository import TemplateRepository
from ..database.session import session_scope
from ..observability import trace_resource
from .common import resource_errors

logger = logging.getLogger(__name__)


@trace_resource("audit")
async def list_user_audit_handler(user_id: str) -> dict[str, Any]:
    """Audit events of every loan the user is a party to, newest first."""
    with resource_errors("audit history"), session_scope() as session:
        result = AuditTrail(session).list_for_user(user_id)
        return {
            "user_id": user_id,
            "events": [event.model_dump(mode="json") for event in result.items],
            "total": result.total,
            "page": result.page,
            "has_next": result.has_next,
        }


@trace_resource("template")
async def get_lending_template_handler(user_id: str) -> dict[str, Any]:
    """The user's lending template, or the server defaults when none is saved."""
    with resource_errors("lending template"), session_scope() as session:
        return TemplateRepository(session).get(user_id).model_dump(mode="json")


@trace_resource("notifications")
async def list_notifications_handler(user_id: str) -> dict[str, Any]:
    """The user's most recent notifications."""
    with resource_errors("notifications"), session_scope() as session:
        notifications = NotificationRepository(session).list_for_user(user_id)
        return {
            "user_id": user_id,
            "unread": sum(1 for n in notifications if n.read_at is None),
            "notifications": [n.model_dump(mode="json") for n in notifications],
        }


account_resources: list[dict[str, Any]] = [
    {
        "uri_template": "lending://users/{user_id}/audit",
        "name": "Loan Audit History",
        "description": "Transitions of every loan the user lent or borrowed, newest first.",
        "mime_type": "application/json",
        "handler": list_user_audit_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/template",
        "name": "Lending Template",
        "description": "The user's standing loan terms applied to new offers.",
        "mime_type": "application/json",
        "handler": get_lending_template_handler,
    },
    {
        "uri_template": "lending://users/{user_id}/notifications",
        "name": "Notifications",
        "description": "Loan and renewal notifications for the user, newest first.",
        "mime_type": "application/json",
        "handler": list_notifications_handler,
    },
]
