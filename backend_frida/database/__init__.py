"""
Database abstraction layer: match nodes and transaction links.

SQLite via Database and get_database() by default; SQLAlchemyBackend serves
DATABASE_URL (PostgreSQL). Both implement MatchNodeBackend.
"""

from backend_frida.database.database import (
    Database,
    MatchNodeBackend,
    SQLiteBackend,
    get_database,
)
from backend_frida.database.models import (
    ConnectedTransaction,
    DirectConnection,
    LinkEdge,
    MatchingField,
    MatchNode,
    MatchNodeLink,
)

__all__ = [
    "Database",
    "MatchNodeBackend",
    "SQLiteBackend",
    "get_database",
    "ConnectedTransaction",
    "DirectConnection",
    "LinkEdge",
    "MatchingField",
    "MatchNode",
    "MatchNodeLink",
]
