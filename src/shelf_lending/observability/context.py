"""Context managers for tracing lending transitions."""

from contextlib import contextmanager

import logfire


@contextmanager
def trace_repository_operation(repository: str, operation: str, **attributes):
    """Open a span around one repository operation.

    Typed lending errors are recorded on the span with their code before
    propagating.
    """
    with logfire.span(
        "db.{repository}.{operation}",
        repository=repository,
        operation=operation,
        **attributes,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_attribute("db.error", str(e))
            span.set_attribute("db.error_code", getattr(e, "code", type(e).__name__))
            raise
