"""
Shared plumbing for the lending tools.

Every tool handler has the same outer shape: validate the raw arguments
against its input model, run the repository call inside one session, and
turn the outcome into an MCP response. Handlers never raise; typed lending
errors become ``isError`` responses carrying the error's code and details
so a client can react (for example retry with ``borrow_anyway``).
"""

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from ..database.repository import LendingError
from ..database.session import get_session

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

USER_ID_PATTERN = r"^user_[a-zA-Z0-9_]+$"
BOOK_ID_PATTERN = r"^book_[a-zA-Z0-9_]+$"
LOAN_ID_PATTERN = r"^loan_[a-zA-Z0-9]+$"
RENEWAL_ID_PATTERN = r"^renewal_[a-zA-Z0-9]+$"


def success_response(text: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "data": data}


def error_response(text: str, code: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "isError": True,
        "content": [{"type": "text", "text": text}],
        "error": {"code": code, "message": text, "details": details or {}},
    }


def run_tool(
    tool_name: str,
    input_model: type[P],
    arguments: dict[str, Any],
    action: Callable[[Session, P], dict[str, Any]],
) -> dict[str, Any]:
    """Validate ``arguments``, run ``action`` in a session and shape the response."""
    try:
        params = input_model.model_validate(arguments)
    except ValidationError as e:
        logger.warning("Invalid %s parameters: %s", tool_name, e)
        return error_response(f"Invalid parameters: {e}", "INVALID_PARAMS")

    try:
        with get_session() as session:
            return action(session, params)
    except LendingError as e:
        logger.info("%s rejected: %s (%s)", tool_name, e.message, e.code)
        return error_response(e.message, e.code, e.details)
    except ValueError as e:
        logger.info("%s rejected: %s", tool_name, e)
        return error_response(f"Invalid parameters: {e}", "INVALID_PARAMS")
    except Exception as e:
        logger.exception("Unexpected error in %s tool", tool_name)
        return error_response(f"An unexpected error occurred: {e!s}", "INTERNAL_ERROR")
