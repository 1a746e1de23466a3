"""
Social graph collaborator.

Whether one user may borrow from another (friendship, blocking, privacy
toggles) is decided outside the lending engine. The engine only asks.
"""

from typing import Protocol


class SocialGraph(Protocol):
    def may_borrow(self, borrower_id: str, lender_id: str) -> bool: ...


class OpenSocialGraph:
    """Allows every pair. Used when no social layer is wired in."""

    def may_borrow(self, borrower_id: str, lender_id: str) -> bool:  # noqa: ARG002
        return True


class StaticSocialGraph:
    """Allows only the listed (borrower, lender) pairs."""

    def __init__(self, allowed: set[tuple[str, str]] | None = None):
        self.allowed = set(allowed or ())

    def allow(self, borrower_id: str, lender_id: str) -> None:
        self.allowed.add((borrower_id, lender_id))

    def may_borrow(self, borrower_id: str, lender_id: str) -> bool:
        return (borrower_id, lender_id) in self.allowed
