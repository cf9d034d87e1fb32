"""Module de synchronisation API Riot → DuckDB.

Ce module gère le pipeline de synchronisation des amis :
API Riot → Validation Pydantic → DuckDB

Architecture:
- api_client.py : Client aiohttp avec espacement des appels et retry
- transformers.py : Payloads Riot → rows DuckDB
- friend_sync.py : Étapes par ami (identité, rang, IDs, détails)
- locks.py : Verrous global et par ami
- engine.py : Orchestrateur SyncPipeline
- tick_loop.py : Boucle de ticks pour le cron
- models.py : Modèles de données (SyncOptions, SyncResult, rows)

Usage:
    from src.data.sync import RiotAPIClient, SyncOptions, SyncPipeline

    async with RiotAPIClient.from_settings(settings) as client:
        result = await SyncPipeline(repo, client, settings).run_sync(SyncOptions())
    print(result.to_message())
"""

from src.data.sync.api_client import (
    MissingAPIKeyError,
    RequestGate,
    RetryPolicy,
    RiotAPIClient,
    RiotAPIError,
)
from src.data.sync.engine import SyncPipeline, check_riot_health
from src.data.sync.friend_sync import FriendNotFoundError, FriendSync
from src.data.sync.locks import (
    DuckDBLockStore,
    LockStore,
    SyncAlreadyRunningError,
    global_sync_lock,
)
from src.data.sync.models import (
    FriendRow,
    FriendSyncResult,
    SyncOptions,
    SyncResult,
)
from src.data.sync.tick_loop import TickLoopResult, run_tick_loop

__all__ = [
    # Models
    "SyncOptions",
    "SyncResult",
    "FriendSyncResult",
    "FriendRow",
    # Engine
    "SyncPipeline",
    "FriendSync",
    "FriendNotFoundError",
    "check_riot_health",
    "run_tick_loop",
    "TickLoopResult",
    # Locks
    "LockStore",
    "DuckDBLockStore",
    "SyncAlreadyRunningError",
    "global_sync_lock",
    # API Client
    "RiotAPIClient",
    "RiotAPIError",
    "MissingAPIKeyError",
    "RequestGate",
    "RetryPolicy",
]
