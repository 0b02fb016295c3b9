"""Storage package providing persistence utilities for arbitrage data."""

from .models import PersistedOpportunity, ScanCycleRecord
from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository", "PersistedOpportunity", "ScanCycleRecord"]
