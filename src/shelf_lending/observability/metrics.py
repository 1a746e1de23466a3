"""Custom metrics for the Shelf Lending server."""

from typing import Any

import logfire

loan_transitions = logfire.metric_counter(
    "lending.loan.transitions", description="Committed loan and renewal transitions by action"
)

sweep_loans_expired = logfire.metric_gauge(
    "lending.sweep.expired", description="Loans expired by the most recent maintenance sweep"
)

sweep_reminders_sent = logfire.metric_gauge(
    "lending.sweep.reminders", description="Reminders sent by the most recent maintenance sweep"
)

sweep_failures = logfire.metric_counter(
    "lending.sweep.failures", description="Loans the maintenance sweep failed to process"
)


def record_loan_transition(action: str) -> None:
    """Count one committed transition."""
    loan_transitions.add(1, {"action": action})


def record_sweep(report: Any) -> None:
    """Publish the outcome of one maintenance sweep."""
    sweep_loans_expired.set(report.expired)
    sweep_reminders_sent.set(report.reminders_sent)
    if report.failures:
        sweep_failures.add(report.failures)
