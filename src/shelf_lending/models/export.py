"""
Annotation export payload.

When a loan ends the borrower may take a snapshot of their annotations on
the book for a bounded window. The snapshot is versioned and carries an
integrity hash over its canonical JSON form (sorted keys, no whitespace,
the ``integrity`` field itself left out) so a recipient can check it was
not altered after generation.
"""

import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .annotation import Highlight, Note
from .loan import LoanStatus

EXPORT_SCHEMA_VERSION = 1
INTEGRITY_ALGORITHM = "sha256"


class _ExportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportLoanSummary(_ExportModel):
    id: str
    status: LoanStatus
    requested_at: datetime
    accepted_at: datetime | None = None
    due_at: datetime | None = None
    ended_at: datetime | None = None
    export_available_until: datetime | None = None
    annotation_visibility: str


class ExportParty(_ExportModel):
    id: str
    display_name: str | None = None
    email: str | None = None


class ExportBook(_ExportModel):
    id: str
    title: str
    author: str | None = None


class ExportHighlight(_ExportModel):
    id: str
    cfi_range: str
    text: str
    note: str | None = None
    color: str | None = None
    chapter_href: str | None = None
    scope: str
    revision: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_highlight(cls, highlight: Highlight) -> "ExportHighlight":
        return cls.model_validate(highlight.model_dump(mode="json"))


class ExportNote(_ExportModel):
    id: str
    cfi: str | None = None
    text: str
    message: str | None = None
    scope: str
    revision: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_note(cls, note: Note) -> "ExportNote":
        return cls.model_validate(note.model_dump(mode="json"))


class ExportIntegrity(_ExportModel):
    algorithm: str = INTEGRITY_ALGORITHM
    hash: str


class LoanExport(_ExportModel):
    """The versioned export snapshot, serialised with camelCase keys."""

    schema_version: int = Field(EXPORT_SCHEMA_VERSION)
    exported_at: datetime
    loan: ExportLoanSummary
    lender: ExportParty
    borrower: ExportParty
    book: ExportBook
    notes: list[ExportNote]
    highlights: list[ExportHighlight]
    integrity: ExportIntegrity | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def canonical_json(payload: dict[str, Any]) -> str:
    """Canonical serialisation of ``payload`` minus its integrity block."""
    body = {key: value for key, value in payload.items() if key != "integrity"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_integrity(payload: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def seal(export: LoanExport) -> dict[str, Any]:
    """Serialise ``export`` and attach its integrity hash."""
    payload = export.to_payload()
    payload["integrity"] = {
        "algorithm": INTEGRITY_ALGORITHM,
        "hash": compute_integrity(payload),
    }
    return payload


def verify_export(payload: dict[str, Any]) -> bool:
    """True when ``payload``'s integrity hash matches its content."""
    integrity = payload.get("integrity")
    if not isinstance(integrity, dict):
        return False
    if integrity.get("algorithm") != INTEGRITY_ALGORITHM:
        return False
    return integrity.get("hash") == compute_integrity(payload)
