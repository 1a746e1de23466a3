"""
Maintenance sweep: expiration and reminders without waiting for a read.

The sweep walks every ACTIVE loan, plus ended loans whose export window is
still open, and for each one:

1. expires it if it is past its effective end (the same guarded transition
   the read path uses)
2. otherwise sends the due-soon, overdue or export-window reminder that is
   due, at most once per marker

Each loan is processed in its own session and unit, so one failing loan is
logged and counted without holding up the rest. A marker is claimed with
``UPDATE ... WHERE marker IS NULL`` in the same unit that stages the
notification, which makes running the sweep twice (or concurrently) safe.

The sweep does not schedule itself. A ``Ticker`` drives it: the
APScheduler-backed one in production, ``ManualTicker`` in tests.
"""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .clock import Clock, utcnow
from .config import LendingConfig, get_config
from .database.loan_repository import LoanRepository
from .database.notification_repository import (
    DatabaseNotificationSink,
    NotificationSink,
    dispatch,
)
from .database.schema import Loan as LoanDB
from .database.schema import LoanStatusEnum
from .database.session import atomic
from .models.loan import ENDED_STATUSES, LoanStatus, NotificationIntent, event_key
from .observability.metrics import record_sweep

logger = logging.getLogger(__name__)

SinkFactory = Callable[[Session], NotificationSink]


@dataclass
class SweepReport:
    """Outcome of one sweep."""

    started_at: datetime
    scanned: int = 0
    expired: int = 0
    reminders_sent: int = 0
    failures: int = 0
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class MaintenanceSweep:
    """Re-evaluates loans on a timer."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock = utcnow,
        sink_factory: SinkFactory | None = None,
        config: LendingConfig | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config or get_config()
        self.sink_factory = sink_factory or (
            lambda session: DatabaseNotificationSink(session, clock=self.clock, config=self.config)
        )

    def candidate_ids(self, session: Session, user_id: str | None = None) -> list[str]:
        """
        ACTIVE loans, and ended loans still owed an export-window reminder.

        With ``user_id`` only loans that user lends or borrows are returned.
        """
        now = self.clock()
        ended = [LoanStatusEnum(s.value) for s in ENDED_STATUSES]
        query = select(LoanDB.id).where(
            or_(
                LoanDB.status == LoanStatusEnum.ACTIVE,
                (LoanDB.status.in_(ended))
                & (LoanDB.export_available_until > now)
                & (LoanDB.ended_reminder_notified_at.is_(None)),
            )
        )
        if user_id is not None:
            query = query.where(or_(LoanDB.lender_id == user_id, LoanDB.borrower_id == user_id))
        return list(session.execute(query.order_by(LoanDB.id)).scalars().all())

    def run_once(self, user_id: str | None = None) -> SweepReport:
        """Process every candidate loan once, or only those of ``user_id``."""
        report = SweepReport(started_at=self.clock())
        with self.session_factory() as session:
            loan_ids = self.candidate_ids(session, user_id)

        for loan_id in loan_ids:
            report.scanned += 1
            try:
                with self.session_factory() as session:
                    self._process(session, loan_id, report)
            except Exception:
                report.failures += 1
                logger.exception("Maintenance sweep failed for loan %s", loan_id)

        report.finished_at = self.clock()
        record_sweep(report)
        logger.info(
            "Maintenance sweep: %d scanned, %d expired, %d reminders, %d failures",
            report.scanned,
            report.expired,
            report.reminders_sent,
            report.failures,
        )
        return report

    def _process(self, session: Session, loan_id: str, report: SweepReport) -> None:
        sink = self.sink_factory(session)
        loans = LoanRepository(session, sink=sink, clock=self.clock, config=self.config)
        if loans.expire_if_needed(loan_id):
            report.expired += 1
            return

        loan = loans.get_row(loan_id)
        now = self.clock()
        status = LoanStatus(loan.status)

        if status == LoanStatus.ACTIVE and loan.due_at is not None:
            if now >= loan.due_at:
                sent = self._claim(
                    session, sink, loan, "overdue_notified_at", self._overdue(loan), now
                )
            elif (
                loan.remind_before_days > 0
                and loan.due_at - timedelta(days=loan.remind_before_days) <= now
            ):
                sent = self._claim(
                    session, sink, loan, "due_soon_notified_at", self._due_soon(loan), now
                )
            else:
                sent = False
        elif status in ENDED_STATUSES and loan.export_available_until is not None:
            # Remind once the window has at most remind_before_days (min 1) left
            lead = timedelta(days=max(loan.remind_before_days, 1))
            closes = loan.export_available_until
            if closes - lead <= now < closes:
                sent = self._claim(
                    session,
                    sink,
                    loan,
                    "ended_reminder_notified_at",
                    self._export_closing(loan),
                    now,
                )
            else:
                sent = False
        else:
            sent = False

        if sent:
            report.reminders_sent += 1

    def _claim(
        self,
        session: Session,
        sink: NotificationSink,
        loan: LoanDB,
        marker: str,
        intents: list[NotificationIntent],
        now: datetime,
    ) -> bool:
        """Set ``marker`` if unset and send ``intents`` in the same unit."""
        if getattr(loan, marker) is not None:
            return False
        column = getattr(LoanDB, marker)
        with atomic(session, f"claim_{marker}"):
            result = session.execute(
                update(LoanDB)
                .where(LoanDB.id == loan.id, LoanDB.status == loan.status, column.is_(None))
                .values({marker: now})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            dispatch(sink, intents)
        logger.debug("Loan %s: %s claimed", loan.id, marker)
        return True

    @staticmethod
    def _due_soon(loan: LoanDB) -> list[NotificationIntent]:
        return [
            NotificationIntent(
                user_id=loan.borrower_id,
                kind="LOAN_DUE_SOON",
                title="Loan due soon",
                message=f"Your borrowed book is due {loan.due_at.strftime('%B %d, %Y')}.",
                event_key=event_key(loan.id, "due_soon", loan.due_at),
                loan_id=loan.id,
                meta={"book_id": loan.book_id, "due_at": loan.due_at.isoformat()},
            )
        ]

    @staticmethod
    def _overdue(loan: LoanDB) -> list[NotificationIntent]:
        return [
            NotificationIntent(
                user_id=loan.borrower_id,
                kind="LOAN_OVERDUE",
                title="Loan overdue",
                message="Your borrowed book is past its due date and will expire "
                "at the end of the grace period.",
                event_key=event_key(loan.id, "overdue", loan.due_at),
                loan_id=loan.id,
                meta={"book_id": loan.book_id, "grace_days": loan.grace_days},
            )
        ]

    @staticmethod
    def _export_closing(loan: LoanDB) -> list[NotificationIntent]:
        closes = loan.export_available_until
        return [
            NotificationIntent(
                user_id=loan.borrower_id,
                kind="EXPORT_WINDOW_CLOSING",
                title="Export your annotations",
                message="Annotations from an ended loan can be exported until "
                f"{closes.strftime('%B %d, %Y')}.",
                event_key=event_key(loan.id, "export_closing", closes),
                loan_id=loan.id,
                meta={"book_id": loan.book_id, "export_available_until": closes.isoformat()},
            )
        ]


class Ticker(Protocol):
    """Something that calls a callback periodically."""

    def start(self, callback: Callable[[], Any]) -> None: ...

    def stop(self) -> None: ...


class ApschedulerTicker:
    """Runs the callback on an APScheduler background thread."""

    def __init__(self, interval_seconds: int, job_id: str = "maintenance_sweep"):
        self.interval_seconds = interval_seconds
        self.job_id = job_id
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, callback: Callable[[], Any]) -> None:
        if self.running:
            return

        def _job():
            try:
                callback()
            except Exception:
                logger.exception("Scheduled job %s failed", self.job_id)

        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            func=_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Maintenance sweep scheduled every %d seconds", self.interval_seconds)

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Maintenance sweep scheduler stopped")
        self._scheduler = None


class ManualTicker:
    """Fires only when ``tick()`` is called."""

    def __init__(self):
        self._callback: Callable[[], Any] | None = None

    def start(self, callback: Callable[[], Any]) -> None:
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    def tick(self) -> Any:
        if self._callback is None:
            raise RuntimeError("Ticker is not started")
        return self._callback()
