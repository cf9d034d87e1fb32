"""
Module data : amis, matchs et synchronisation Riot dans DuckDB.
(Data module: friends, matches and Riot sync into DuckDB)

HOW IT WORKS:
1. sync/ : client Riot, étapes par ami, orchestrateur et boucle cron
2. repositories/ : contrat SyncRepository et implémentation DuckDB
3. services/ : calculs en lecture seule sur les données synchronisées

Usage:
    from src.data.repositories import DuckDBSyncRepository
    from src.data.sync import SyncOptions, SyncPipeline
"""
