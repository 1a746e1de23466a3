"""
Shelf Lending models.

Pydantic v2 read models for every entity the lending engine exposes, plus
the pure rules that sit between storage and the MCP surface:

- Loan: lending relationships, the expiration predicate and transition plans
- Renewal: due-date extension requests
- Annotation: highlights, notes, scope resolution and visibility filters
- Library: access records, entitlements, lending templates, notifications
- Export: the integrity-sealed annotation snapshot
- Audit: the transition log
"""

from .annotation import (
    AnnotationScope,
    Capability,
    Highlight,
    Note,
    VisibilityFilter,
    VisibleAnnotations,
    resolve_scope,
)
from .audit import AuditAction, AuditEntry, AuditEvent
from .export import LoanExport, seal, verify_export
from .library import (
    Entitlement,
    EntitlementStatus,
    LendingTemplate,
    LendingTemplateUpdate,
    LibraryAccess,
    Notification,
    PolicyOverride,
)
from .loan import (
    ENDED_STATUSES,
    TERMINAL_STATUSES,
    AnnotationVisibility,
    Loan,
    LoanPolicy,
    LoanStatus,
    LoanTransition,
    NotificationIntent,
    effective_end,
    is_past_effective_end,
)
from .renewal import Renewal, RenewalStatus

__all__ = [
    "ENDED_STATUSES",
    "TERMINAL_STATUSES",
    "AnnotationScope",
    "AnnotationVisibility",
    "AuditAction",
    "AuditEntry",
    "AuditEvent",
    "Capability",
    "Entitlement",
    "EntitlementStatus",
    "Highlight",
    "LendingTemplate",
    "LendingTemplateUpdate",
    "LibraryAccess",
    "Loan",
    "LoanExport",
    "LoanPolicy",
    "LoanStatus",
    "LoanTransition",
    "Note",
    "Notification",
    "NotificationIntent",
    "PolicyOverride",
    "Renewal",
    "RenewalStatus",
    "VisibilityFilter",
    "VisibleAnnotations",
    "effective_end",
    "is_past_effective_end",
    "resolve_scope",
    "seal",
    "verify_export",
]
