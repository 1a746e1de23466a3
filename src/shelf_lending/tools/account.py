"""Account tools: lending template, notifications and the maintenance sweep."""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from ..database.library_repository import LibraryRepository
from ..database.notification_repository import NotificationRepository
from ..database.repository import LendingError
from ..database.template_repository import TemplateRepository
from ..maintenance import MaintenanceSweep
from ..models.library import LendingTemplateUpdate
from ..observability import trace_tool
from . import common
from .common import USER_ID_PATTERN, error_response, run_tool, success_response

logger = logging.getLogger(__name__)


class UpdateLendingTemplateInput(LendingTemplateUpdate):
    """
    Input schema for the update_lending_template tool.

    Only the fields sent are changed; the rest keep their stored (or
    default) values. Loans already offered keep the terms they were
    offered with.
    """

    actor_id: str = Field(
        ..., description="Lender whose template to update", pattern=USER_ID_PATTERN
    )


def _update_lending_template(
    session: Session, params: UpdateLendingTemplateInput
) -> dict[str, Any]:
    LibraryRepository(session).require_user(params.actor_id)
    changes = LendingTemplateUpdate.model_validate(
        params.model_dump(include=set(LendingTemplateUpdate.model_fields), exclude_unset=True)
    )
    template = TemplateRepository(session).upsert(params.actor_id, changes)
    return success_response(
        f"Lending template saved: {template.duration_days}-day loans, "
        f"{template.grace_days} grace days.",
        {"template": template.model_dump(mode="json")},
    )


@trace_tool("update_lending_template")
async def update_lending_template_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool(
        "update_lending_template", UpdateLendingTemplateInput, arguments, _update_lending_template
    )


class MarkNotificationReadInput(BaseModel):
    """Input schema for the mark_notification_read tool."""

    actor_id: str = Field(..., description="Recipient of the notification", pattern=USER_ID_PATTERN)
    notification_id: str = Field(..., description="Notification to mark as read")


def _mark_notification_read(session: Session, params: MarkNotificationReadInput) -> dict[str, Any]:
    NotificationRepository(session).mark_read(params.actor_id, params.notification_id)
    return success_response(
        "Notification marked as read.", {"notification_id": params.notification_id}
    )


@trace_tool("mark_notification_read")
async def mark_notification_read_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool(
        "mark_notification_read", MarkNotificationReadInput, arguments, _mark_notification_read
    )


class RunMaintenanceSweepInput(BaseModel):
    """Input schema for the run_maintenance_sweep tool."""

    actor_id: str = Field(
        ..., description="User whose loans are re-evaluated", pattern=USER_ID_PATTERN
    )


@trace_tool("run_maintenance_sweep")
async def run_maintenance_sweep_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Re-evaluate the caller's loans now instead of waiting for the scheduler.

    Only loans the actor lends or borrows are swept; the scheduled sweep
    covers everyone. Each loan is handled in its own session, so the sweep
    itself does not go through ``run_tool``'s single-session wrapper.
    """
    try:
        params = RunMaintenanceSweepInput.model_validate(arguments or {})
    except ValidationError as e:
        logger.warning("Invalid run_maintenance_sweep parameters: %s", e)
        return error_response(f"Invalid parameters: {e}", "INVALID_PARAMS")

    try:
        with common.get_session() as session:
            LibraryRepository(session).require_user(params.actor_id)
        report = MaintenanceSweep(common.get_session).run_once(user_id=params.actor_id)
    except LendingError as e:
        return error_response(e.message, e.code, e.details)
    except Exception as e:
        logger.exception("Unexpected error in run_maintenance_sweep tool")
        return error_response(f"An unexpected error occurred: {e!s}", "INTERNAL_ERROR")

    return success_response(
        f"Sweep finished: {report.expired} loans expired, "
        f"{report.reminders_sent} reminders sent, {report.failures} failures.",
        {"report": report.to_dict()},
    )


account_tools: list[dict[str, Any]] = [
    {
        "name": "update_lending_template",
        "description": (
            "Change your standing loan terms: duration, grace period, reminder lead time, "
            "annotation permissions and visibility. Applies to loans offered from now on."
        ),
        "inputSchema": UpdateLendingTemplateInput.model_json_schema(),
        "handler": update_lending_template_handler,
    },
    {
        "name": "mark_notification_read",
        "description": "Mark one of your notifications as read.",
        "inputSchema": MarkNotificationReadInput.model_json_schema(),
        "handler": mark_notification_read_handler,
    },
    {
        "name": "run_maintenance_sweep",
        "description": (
            "Expire your overdue loans and send their due reminders now. The server also "
            "sweeps every loan periodically."
        ),
        "inputSchema": RunMaintenanceSweepInput.model_json_schema(),
        "handler": run_maintenance_sweep_handler,
    },
]
