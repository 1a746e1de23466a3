"""
Lending template repository.

A lender's template holds their standing loan terms. Effective terms for a
new loan resolve in this order: per-request override, then the lender's
template, then the configured defaults.
"""

from sqlalchemy import select

from ..models.library import LendingTemplate, LendingTemplateUpdate, PolicyOverride
from ..models.loan import LoanPolicy
from .repository import BaseRepository
from .schema import AnnotationVisibilityEnum
from .schema import LendingTemplate as TemplateDB
from .session import atomic, safe_query


class TemplateRepository(BaseRepository):
    """One lending template per user."""

    id_prefix = "template"

    def _get_row(self, user_id: str) -> TemplateDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(TemplateDB).where(TemplateDB.user_id == user_id)
            ).scalar_one_or_none(),
            "Failed to get lending template",
        )

    def default_policy(self) -> LoanPolicy:
        return LoanPolicy(
            duration_days=self.config.default_duration_days,
            grace_days=self.config.default_grace_days,
            remind_before_days=self.config.default_remind_before_days,
        )

    def get(self, user_id: str) -> LendingTemplate:
        """The user's template, or the configured defaults when none is stored."""
        row = self._get_row(user_id)
        if row is None:
            return LendingTemplate(
                user_id=user_id, is_default=True, **self.default_policy().model_dump()
            )
        return LendingTemplate.model_validate(row)

    def upsert(self, user_id: str, changes: LendingTemplateUpdate) -> LendingTemplate:
        """Apply ``changes`` on top of the current (or default) template."""
        current = self.get(user_id)
        values = current.model_dump(exclude={"user_id", "is_default"})
        values.update(changes.model_dump(exclude_none=True))
        merged = LendingTemplate(user_id=user_id, **values)

        with atomic(self.session, "upsert_lending_template"):
            row = self._get_row(user_id)
            now = self.now()
            if row is None:
                row = TemplateDB(id=self.new_id(), user_id=user_id, created_at=now)
                self.session.add(row)
            row.name = merged.name
            row.duration_days = merged.duration_days
            row.grace_days = merged.grace_days
            row.remind_before_days = merged.remind_before_days
            row.can_add_highlights = merged.can_add_highlights
            row.can_edit_highlights = merged.can_edit_highlights
            row.can_add_notes = merged.can_add_notes
            row.can_edit_notes = merged.can_edit_notes
            row.annotation_visibility = AnnotationVisibilityEnum(merged.annotation_visibility.value)
            row.share_lender_annotations = merged.share_lender_annotations
            row.updated_at = now
        return LendingTemplate.model_validate(row)

    def resolve_policy(self, user_id: str, override: PolicyOverride | None = None) -> LoanPolicy:
        """Effective terms for a loan offered by ``user_id``."""
        policy = self.get(user_id).policy()
        if override is not None:
            policy = override.apply(policy)
        return policy
