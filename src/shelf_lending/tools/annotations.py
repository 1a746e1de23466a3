"""
Annotation tools: highlights and notes.

Edits and deletes take an optional ``expected_revision``. When it no longer
matches, the call fails with CONFLICT and ``details.current_revision`` so
the client can reload and retry.
"""

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database.annotation_repository import (
    AnnotationRepository,
    HighlightCreateSchema,
    HighlightUpdateSchema,
    NoteCreateSchema,
    NoteUpdateSchema,
)
from ..observability import trace_tool
from .common import BOOK_ID_PATTERN, USER_ID_PATTERN, run_tool, success_response

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class CreateHighlightInput(HighlightCreateSchema):
    """Input schema for the create_highlight tool."""

    actor_id: str = Field(..., description="Reader saving the highlight", pattern=USER_ID_PATTERN)
    book_id: str = Field(..., description="Book being read", pattern=BOOK_ID_PATTERN)


class UpdateHighlightInput(HighlightUpdateSchema):
    """Input schema for the update_highlight tool."""

    actor_id: str = Field(..., description="Author of the highlight", pattern=USER_ID_PATTERN)
    highlight_id: str = Field(..., description="Highlight to edit")
    expected_revision: int | None = Field(
        None, description="Revision the edit is based on", ge=1
    )


class DeleteHighlightInput(BaseModel):
    """Input schema for the delete_highlight tool."""

    actor_id: str = Field(..., description="Author of the highlight", pattern=USER_ID_PATTERN)
    highlight_id: str = Field(..., description="Highlight to delete")
    expected_revision: int | None = Field(None, ge=1)


class CreateNoteInput(NoteCreateSchema):
    """Input schema for the create_note tool."""

    actor_id: str = Field(..., description="Reader writing the note", pattern=USER_ID_PATTERN)
    book_id: str = Field(..., description="Book being read", pattern=BOOK_ID_PATTERN)


class UpdateNoteInput(NoteUpdateSchema):
    """Input schema for the update_note tool."""

    actor_id: str = Field(..., description="Author of the note", pattern=USER_ID_PATTERN)
    note_id: str = Field(..., description="Note to edit")
    expected_revision: int | None = Field(None, ge=1)


class DeleteNoteInput(BaseModel):
    """Input schema for the delete_note tool."""

    actor_id: str = Field(..., description="Author of the note", pattern=USER_ID_PATTERN)
    note_id: str = Field(..., description="Note to delete")
    expected_revision: int | None = Field(None, ge=1)


def _changes(model: type[M], params: BaseModel) -> M:
    """Carry over only the editable fields the caller actually sent."""
    sent = params.model_dump(include=set(model.model_fields), exclude_unset=True)
    return model(**sent)


def _create_highlight(session: Session, params: CreateHighlightInput) -> dict[str, Any]:
    data = HighlightCreateSchema.model_validate(
        params.model_dump(include=set(HighlightCreateSchema.model_fields))
    )
    highlight = AnnotationRepository(session).create_highlight(
        params.actor_id, params.book_id, data
    )
    return success_response(
        f"Highlight saved (revision {highlight.revision}).",
        {"highlight": highlight.model_dump(mode="json")},
    )


def _update_highlight(session: Session, params: UpdateHighlightInput) -> dict[str, Any]:
    highlight = AnnotationRepository(session).update_highlight(
        params.actor_id,
        params.highlight_id,
        _changes(HighlightUpdateSchema, params),
        params.expected_revision,
    )
    return success_response(
        f"Highlight updated (revision {highlight.revision}).",
        {"highlight": highlight.model_dump(mode="json")},
    )


def _delete_highlight(session: Session, params: DeleteHighlightInput) -> dict[str, Any]:
    AnnotationRepository(session).delete_highlight(
        params.actor_id, params.highlight_id, params.expected_revision
    )
    return success_response("Highlight deleted.", {"highlight_id": params.highlight_id})


def _create_note(session: Session, params: CreateNoteInput) -> dict[str, Any]:
    data = NoteCreateSchema.model_validate(
        params.model_dump(include=set(NoteCreateSchema.model_fields))
    )
    note = AnnotationRepository(session).create_note(params.actor_id, params.book_id, data)
    return success_response("Note saved.", {"note": note.model_dump(mode="json")})


def _update_note(session: Session, params: UpdateNoteInput) -> dict[str, Any]:
    note = AnnotationRepository(session).update_note(
        params.actor_id,
        params.note_id,
        _changes(NoteUpdateSchema, params),
        params.expected_revision,
    )
    return success_response(
        f"Note updated (revision {note.revision}).", {"note": note.model_dump(mode="json")}
    )


def _delete_note(session: Session, params: DeleteNoteInput) -> dict[str, Any]:
    AnnotationRepository(session).delete_note(
        params.actor_id, params.note_id, params.expected_revision
    )
    return success_response("Note deleted.", {"note_id": params.note_id})


@trace_tool("create_highlight")
async def create_highlight_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("create_highlight", CreateHighlightInput, arguments, _create_highlight)


@trace_tool("update_highlight")
async def update_highlight_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("update_highlight", UpdateHighlightInput, arguments, _update_highlight)


@trace_tool("delete_highlight")
async def delete_highlight_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("delete_highlight", DeleteHighlightInput, arguments, _delete_highlight)


@trace_tool("create_note")
async def create_note_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("create_note", CreateNoteInput, arguments, _create_note)


@trace_tool("update_note")
async def update_note_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("update_note", UpdateNoteInput, arguments, _update_note)


@trace_tool("delete_note")
async def delete_note_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    return run_tool("delete_note", DeleteNoteInput, arguments, _delete_note)


annotation_tools: list[dict[str, Any]] = [
    {
        "name": "create_highlight",
        "description": (
            "Highlight a text range in a book you can read. Saving the same range again "
            "updates the existing highlight. On a borrowed book the lender's permissions apply."
        ),
        "inputSchema": CreateHighlightInput.model_json_schema(),
        "handler": create_highlight_handler,
    },
    {
        "name": "update_highlight",
        "description": "Edit one of your highlights.",
        "inputSchema": UpdateHighlightInput.model_json_schema(),
        "handler": update_highlight_handler,
    },
    {
        "name": "delete_highlight",
        "description": "Delete one of your highlights.",
        "inputSchema": DeleteHighlightInput.model_json_schema(),
        "handler": delete_highlight_handler,
    },
    {
        "name": "create_note",
        "description": "Write a note in a book you can read.",
        "inputSchema": CreateNoteInput.model_json_schema(),
        "handler": create_note_handler,
    },
    {
        "name": "update_note",
        "description": "Edit one of your notes.",
        "inputSchema": UpdateNoteInput.model_json_schema(),
        "handler": update_note_handler,
    },
    {
        "name": "delete_note",
        "description": "Delete one of your notes.",
        "inputSchema": DeleteNoteInput.model_json_schema(),
        "handler": delete_note_handler,
    },
]
