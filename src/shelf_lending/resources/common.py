"""Error handling shared by the lending resources."""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from fastmcp.exceptions import ResourceError

from ..database.repository import LendingError

logger = logging.getLogger(__name__)


@contextmanager
def resource_errors(description: str) -> Generator[None, None, None]:
    """
    Convert failures inside a resource read into ``ResourceError``.

    Typed lending errors keep their code in the message, e.g.
    ``FORBIDDEN: Only the lender or borrower can view this loan``.
    """
    try:
        yield
    except ResourceError:
        raise
    except LendingError as e:
        logger.info("%s read rejected: %s", description, e.message)
        raise ResourceError(f"{e.code}: {e.message}") from e
    except ValueError as e:
        raise ResourceError(f"Invalid request for {description}: {e}") from e
    except Exception as e:
        logger.exception("Error in %s resource", description)
        raise ResourceError(f"Failed to retrieve {description}: {e!s}") from e
