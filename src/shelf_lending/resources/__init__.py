"""Shelf Lending MCP resources.

Resources are the read side of the server: loans by role, renewals, audit
history, entitlements, visible annotations, templates and notifications.
Every URI is scoped to the user reading it (``lending://users/{user_id}/...``)
so the same party checks as the tools apply.
"""

from .account import account_resources
from .loans import loan_resources
from .reading import reading_resources

all_resources = loan_resources + reading_resources + account_resources

__all__ = [
    "account_resources",
    "all_resources",
    "loan_resources",
    "reading_resources",
]
