#!/usr/bin/env python3
"""Script de synchronisation des amis (API Riot → DuckDB).

Point d'entrée unique pour toutes les opérations de synchronisation :
- Run unique (latest ou backfill depuis une date)
- Boucle de ticks pour le cron (--loop)
- Statut de la base (--status)
- Vérification de la clé Riot (--health)
- Synergies entre amis (--synergy)

Le résultat est écrit en JSON sur la sortie standard.

Usage:
    python scripts/sync.py --help
    python scripts/sync.py                            # Sync incrémentale
    python scripts/sync.py --from 2024-01-01          # Backfill depuis une date
    python scripts/sync.py --friend <id> --count 300  # Un seul ami, 300 IDs max
    python scripts/sync.py --loop                     # Boucle cron (ticks)
    python scripts/sync.py --status                   # Compteurs et derniers états
    python scripts/sync.py --health                   # Vérifie la clé Riot
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Ajouter le répertoire parent au path pour les imports
REPO_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(REPO_ROOT))

from src.config import SyncSettings, get_default_db_path  # noqa: E402
from src.data.repositories import DuckDBSyncRepository  # noqa: E402
from src.data.services import compute_synergy_pairs  # noqa: E402
from src.data.sync import (  # noqa: E402
    FriendNotFoundError,
    MissingAPIKeyError,
    RiotAPIClient,
    SyncAlreadyRunningError,
    SyncOptions,
    SyncPipeline,
    check_riot_health,
    run_tick_loop,
)

# Configuration du logging (stderr : stdout est réservé au JSON)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _build_options(args: argparse.Namespace) -> SyncOptions:
    return SyncOptions(
        mode="backfill" if args.from_date else args.mode,
        from_date=args.from_date,
        count=args.count,
        max=args.max,
        friend_id=args.friend,
        time_budget_ms=args.budget_ms,
    )


# =============================================================================
# Commandes
# =============================================================================


async def run_once(repo: DuckDBSyncRepository, settings: SyncSettings, options: SyncOptions) -> dict[str, Any]:
    """Un run de synchronisation."""
    async with RiotAPIClient.from_settings(settings) as client:
        result = await SyncPipeline(repo, client, settings).run_sync(options)
    return result.to_dict()


async def run_loop(repo: DuckDBSyncRepository, settings: SyncSettings, options: SyncOptions) -> dict[str, Any]:
    """Boucle de ticks (invocation cron), un client partagé par tous les ticks."""
    async with RiotAPIClient.from_settings(settings) as client:
        pipeline = SyncPipeline(repo, client, settings)

        async def tick(budget_ms: int):
            tick_options = SyncOptions(
                mode=options.mode,
                from_date=options.from_date,
                count=options.count,
                max=options.max,
                friend_id=options.friend_id,
                time_budget_ms=budget_ms,
            )
            return await pipeline.run_sync(tick_options)

        loop = await run_tick_loop(
            tick,
            ceiling_ms=settings.cron_ceiling_ms,
            tick_budget_ms=settings.cron_tick_budget_ms,
            max_loops=settings.cron_max_loops,
        )
    return loop.to_dict()


async def run_health(settings: SyncSettings) -> dict[str, Any]:
    """Vérifie que la clé Riot est valide."""
    async with RiotAPIClient.from_settings(settings) as client:
        health = await check_riot_health(client)
    health["region"] = settings.riot_region
    return health


def main() -> int:
    """Point d'entrée principal."""
    parser = argparse.ArgumentParser(
        description="Synchronisation des amis League of Legends (API Riot → DuckDB)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exemples:
  python scripts/sync.py                            # Sync incrémentale
  python scripts/sync.py --from 2024-01-01          # Backfill depuis le 1er janvier
  python scripts/sync.py --friend <id> --count 300  # Un seul ami
  python scripts/sync.py --loop                     # Boucle cron
  python scripts/sync.py --status                   # Statut de la base
        """,
    )

    # Base de données
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Chemin vers la base DuckDB (défaut: SYNC_DB_PATH ou data/friends.duckdb)",
    )

    # Options de sync
    parser.add_argument(
        "--mode",
        type=str,
        default="latest",
        choices=["latest", "backfill"],
        help="Mode de synchronisation (backfill implicite avec --from)",
    )
    parser.add_argument(
        "--from",
        dest="from_date",
        type=str,
        default=None,
        help="Borne basse du backfill (YYYY-MM-DD, UTC)",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=None,
        help="Amis par run (ou cap d'IDs avec --friend)",
    )
    parser.add_argument(
        "--max",
        type=int,
        default=None,
        help="IDs de match liés par ami et par run",
    )
    parser.add_argument(
        "--friend",
        type=str,
        default=None,
        help="Synchronise uniquement cet ami (id)",
    )
    parser.add_argument(
        "--budget-ms",
        type=int,
        default=None,
        help="Budget temps du run en ms (défaut: SYNC_TIME_BUDGET_MS)",
    )

    # Commandes
    command = parser.add_mutually_exclusive_group()
    command.add_argument("--loop", action="store_true", help="Boucle de ticks (cron)")
    command.add_argument("--status", action="store_true", help="Affiche le statut de la base")
    command.add_argument("--health", action="store_true", help="Vérifie la clé Riot")
    command.add_argument(
        "--synergy",
        type=int,
        nargs="?",
        const=400,
        default=None,
        metavar="TAKE",
        help="Synergies entre amis sur les TAKE matchs les plus récents",
    )

    # Verbosité
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Mode verbeux",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = SyncSettings.from_env()
    if args.verbose and not settings.debug_riot:
        logger.debug("DEBUG_RIOT=1 pour tracer chaque appel Riot")

    if args.health:
        try:
            health = asyncio.run(run_health(settings))
        except MissingAPIKeyError as e:
            _print_json({"ok": False, "error": str(e)})
            return 1
        _print_json(health)
        return 0 if health.get("ok") else 1

    db_path = Path(args.db) if args.db else get_default_db_path()
    with DuckDBSyncRepository(db_path) as repo:
        if args.status:
            _print_json(repo.get_sync_status())
            return 0

        if args.synergy is not None:
            report = compute_synergy_pairs(repo, args.synergy)
            _print_json(
                {
                    "ok": True,
                    "pairs": [p.to_dict() for p in report.pairs],
                    "sample_matches": report.sample_matches,
                }
            )
            return 0

        options = _build_options(args)
        try:
            if args.loop:
                payload = asyncio.run(run_loop(repo, settings, options))
            else:
                payload = asyncio.run(run_once(repo, settings, options))
        except SyncAlreadyRunningError as e:
            _print_json({"ok": False, "error": str(e)})
            return 2
        except (MissingAPIKeyError, FriendNotFoundError, ValueError) as e:
            logger.error(f"Erreur de configuration: {e}")
            _print_json({"ok": False, "error": str(e)})
            return 1

    _print_json(payload)
    return 0 if payload.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
