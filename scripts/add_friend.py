#!/usr/bin/env python3
"""Script pour ajouter un ami à la base de synchronisation.

L'ajout d'un ami est une action explicite : le pipeline ne crée jamais
d'ami de lui-même. Le PUUID est résolu au premier run de sync, ou tout
de suite avec --resolve.

Usage:
    python scripts/add_friend.py <RiotName#TAG> [--region euw1] [--avatar URL] [--resolve]
    python scripts/add_friend.py --list

Exemples:
    # Ajouter un ami (PUUID résolu au prochain sync)
    python scripts/add_friend.py "Faker#KR1" --region kr

    # Ajouter et résoudre le PUUID immédiatement
    python scripts/add_friend.py "Caps#EUW" --resolve

    # Lister les amis enregistrés
    python scripts/add_friend.py --list
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ajouter le répertoire racine au path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from src.config import SyncSettings, get_default_db_path  # noqa: E402
from src.data.domain.refdata import best_rank_score, format_rank  # noqa: E402
from src.data.repositories import DuckDBSyncRepository  # noqa: E402
from src.data.sync import FriendSync, MissingAPIKeyError, RiotAPIClient, RiotAPIError  # noqa: E402
from src.data.sync.models import FriendRow  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_riot_id(value: str) -> tuple[str, str]:
    """Découpe "Nom#TAG" (le nom peut contenir des espaces, pas le tag)."""
    name, sep, tag = (value or "").strip().rpartition("#")
    if not sep or not name.strip() or not tag.strip():
        raise ValueError(f"Riot ID invalide: {value!r} (attendu: Nom#TAG)")
    return name.strip(), tag.strip()


async def resolve_puuid(repo: DuckDBSyncRepository, friend: FriendRow, settings: SyncSettings) -> str:
    """Résout et enregistre le PUUID de l'ami via account-v1."""
    async with RiotAPIClient.from_settings(settings) as client:
        return await FriendSync(repo, client, settings).ensure_puuid(friend)


def sort_by_rank(friends: list[FriendRow]) -> list[FriendRow]:
    """Trie les amis du meilleur rang (solo ou flex) au moins bon."""
    return sorted(
        friends,
        key=lambda f: (
            -best_rank_score(
                f.solo.tier, f.solo.division, f.solo.lp, f.flex.tier, f.flex.division, f.flex.lp
            ),
            f.riot_id.lower(),
        ),
    )


def list_friends(repo: DuckDBSyncRepository) -> None:
    friends = sort_by_rank(repo.list_friends())
    if not friends:
        print("Aucun ami enregistré.")
        return
    for f in friends:
        solo = format_rank(f.solo.tier, f.solo.division, f.solo.lp)
        flex = format_rank(f.flex.tier, f.flex.division, f.flex.lp)
        puuid = "✅" if f.puuid else "⏳"
        print(f"{puuid} {f.riot_id:<28} {f.region:<5} {solo:<24} {flex:<24} {f.id}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Ajouter un ami à la base de synchronisation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("riot_id", nargs="?", help="Riot ID de l'ami (Nom#TAG)")
    parser.add_argument("--region", default=None, help="Plateforme de l'ami (défaut: RIOT_REGION)")
    parser.add_argument("--avatar", dest="avatar_url", default=None, help="URL de l'avatar")
    parser.add_argument("--resolve", action="store_true", help="Résoudre le PUUID immédiatement")
    parser.add_argument("--list", action="store_true", help="Lister les amis enregistrés")
    parser.add_argument("--db", type=str, default=None, help="Chemin vers la base DuckDB")

    args = parser.parse_args()
    settings = SyncSettings.from_env()
    db_path = Path(args.db) if args.db else get_default_db_path()

    with DuckDBSyncRepository(db_path) as repo:
        if args.list:
            list_friends(repo)
            return 0

        if not args.riot_id:
            parser.print_help()
            return 1

        try:
            name, tag = parse_riot_id(args.riot_id)
        except ValueError as e:
            print(f"❌ {e}")
            return 1

        friend = repo.find_friend_by_riot_id(name, tag)
        if friend is not None:
            print(f"ℹ️  {friend.riot_id} existe déjà ({friend.id})")
        else:
            friend = repo.create_friend(
                name,
                tag,
                region=args.region or settings.riot_region,
                avatar_url=args.avatar_url,
            )
            print(f"✅ Ami ajouté: {friend.riot_id} ({friend.id})")

        if args.resolve:
            try:
                puuid = asyncio.run(resolve_puuid(repo, friend, settings))
            except MissingAPIKeyError as e:
                print(f"❌ {e}")
                return 1
            except RiotAPIError as e:
                hint = " (Riot ID introuvable)" if e.is_not_found else ""
                print(f"❌ Résolution du PUUID en échec{hint}: {e}")
                return 1
            print(f"🔗 PUUID: {puuid}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
