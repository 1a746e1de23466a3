"""
Notification sink.

The engine hands notifications to a ``NotificationSink`` and does not wait
for delivery. ``DatabaseNotificationSink`` is the default: it stages rows
in the caller's session, so a notification (and any reminder marker set
alongside it) commits in the same unit as the transition that caused it.
Rows are keyed by ``(user_id, event_key)``; sending the same event twice
overwrites instead of duplicating.
"""

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select, update

from ..models.library import Notification
from ..models.loan import NotificationIntent
from .repository import BaseRepository, NotFoundError
from .schema import Notification as NotificationDB
from .session import atomic, safe_query

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Where the engine sends user-facing events."""

    def notify(
        self,
        user_id: str,
        event_key: str,
        kind: str,
        title: str,
        message: str,
        loan_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None: ...


def dispatch(sink: NotificationSink, intents: Iterable[NotificationIntent]) -> None:
    """Send each intent; a failing sink never fails the transition."""
    for intent in intents:
        try:
            sink.notify(
                intent.user_id,
                intent.event_key,
                intent.kind,
                intent.title,
                intent.message,
                loan_id=intent.loan_id,
                meta=intent.meta,
            )
        except Exception:
            logger.exception(
                "Notification %s for %s was not delivered", intent.kind, intent.user_id
            )


class DatabaseNotificationSink(BaseRepository):
    """Stores notifications in the ``notifications`` table."""

    id_prefix = "notif"

    def notify(
        self,
        user_id: str,
        event_key: str,
        kind: str,
        title: str,
        message: str,
        loan_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        now = self.now()
        payload = json.dumps(meta, sort_keys=True, default=str) if meta else None
        existing = self.session.execute(
            select(NotificationDB).where(
                NotificationDB.user_id == user_id, NotificationDB.event_key == event_key
            )
        ).scalar_one_or_none()

        if existing is not None:
            existing.kind = kind
            existing.title = title
            existing.message = message
            existing.payload_json = payload
            existing.loan_id = loan_id
            existing.updated_at = now
            return

        self.session.add(
            NotificationDB(
                id=self.new_id(),
                user_id=user_id,
                loan_id=loan_id,
                event_key=event_key,
                kind=kind,
                title=title,
                message=message,
                payload_json=payload,
                delivered_at=now,
                created_at=now,
                updated_at=now,
            )
        )


class NotificationRepository(BaseRepository):
    """Read and acknowledge stored notifications."""

    def list_for_user(
        self, user_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = select(NotificationDB).where(NotificationDB.user_id == user_id)
        if unread_only:
            query = query.where(NotificationDB.read_at.is_(None))
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                query.order_by(NotificationDB.created_at.desc(), NotificationDB.id).limit(limit)
            )
            .scalars()
            .all(),
            "Failed to list notifications",
        )
        return [Notification.model_validate(row) for row in rows]

    def mark_read(self, user_id: str, notification_id: str, *, at: datetime | None = None) -> None:
        with atomic(self.session, "mark_notification_read"):
            result = self.session.execute(
                update(NotificationDB)
                .where(NotificationDB.id == notification_id, NotificationDB.user_id == user_id)
                .values(read_at=at or self.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Notification {notification_id} not found")
