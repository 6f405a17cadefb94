"""
Persistence Layer for the Credit Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, StorageFailure
from .models import BalanceRecord, UsageRecord
from .repository import BalanceRepository, UsageRepository, DuplicateOperation

__all__ = [
    "Database",
    "StorageFailure",
    "BalanceRecord",
    "UsageRecord",
    "BalanceRepository",
    "UsageRepository",
    "DuplicateOperation",
]
