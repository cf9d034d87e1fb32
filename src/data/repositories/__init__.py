"""
Repositories : accès aux données du pipeline de synchronisation.
(Repositories: data access for the sync pipeline)

Le pipeline ne dépend que du Protocol SyncRepository ; DuckDBSyncRepository
en est l'implémentation.
"""

from src.data.repositories.duckdb_repo import DuckDBSyncRepository
from src.data.repositories.protocol import SyncRepository

__all__ = [
    "SyncRepository",
    "DuckDBSyncRepository",
]
