"""
Shelf Lending MCP Server Package.

A loan lifecycle and entitlement engine for a personal digital book
library: users lend books to each other, borrowers read and annotate under
the lender's policy, and loans end by return, revocation or expiry.

Key Components:
- models: Pydantic read models, expiration predicate and transition plans
- database: SQLAlchemy schema, transactional units and repositories
- maintenance: periodic expiration and reminder sweep
- config: configuration management with pydantic-settings
- resources: MCP resources (read-only endpoints)
- tools: MCP tools (operations with side effects)
"""

__version__ = "0.1.0"

from . import database

__all__ = [
    "__version__",
    "database",
]
