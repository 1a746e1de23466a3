"""Shelf Lending MCP tools: every operation that changes lending state."""

from .account import account_tools
from .annotations import annotation_tools
from .loans import loan_tools
from .renewals import renewal_tools

all_tools = loan_tools + renewal_tools + annotation_tools + account_tools

__all__ = [
    "account_tools",
    "all_tools",
    "annotation_tools",
    "loan_tools",
    "renewal_tools",
]
