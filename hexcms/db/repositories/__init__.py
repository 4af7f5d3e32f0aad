"""Repository package for database access."""

from .entities import SqliteEntityRepository
from .labels import SqliteLabelRepository
from .ledger import SqliteLedgerRepository

__all__ = [
    "SqliteEntityRepository",
    "SqliteLabelRepository",
    "SqliteLedgerRepository",
]
