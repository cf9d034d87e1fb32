"""Configuration du pipeline de synchronisation.

Toutes les valeurs viennent de l'environnement (avec chargement optionnel de
.env.local / .env à la racine du repo) et sont bornées dans des plages sûres.

Usage:
    from src.config import SyncSettings, get_default_db_path

    settings = SyncSettings.from_env()
    db_path = get_default_db_path()
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent

_TRUTHY = {"1", "true", "yes", "on"}


# =============================================================================
# Helpers
# =============================================================================


def load_dotenv_if_present(repo_root: Path | None = None) -> None:
    """Charge les fichiers .env.local et .env si présents.

    Les variables déjà définies dans l'environnement ne sont jamais écrasées.
    """
    root = repo_root or REPO_ROOT

    for name in (".env.local", ".env"):
        dotenv_path = root / name
        if not dotenv_path.exists():
            continue
        try:
            content = dotenv_path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Lecture impossible de {dotenv_path}: {e}")
            continue

        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if not key:
                continue
            if os.environ.get(key) is None:
                os.environ[key] = value


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    """Convertit en int borné, `default` si la valeur est absente ou invalide."""
    if value is None or value == "":
        return default
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(n) or math.isinf(n):
        return default
    return max(min_value, min(int(n), max_value))


def env_flag(value: Any) -> bool:
    """Interprète un flag d'environnement ("1", "true", "yes", "on")."""
    return str(value or "").strip().lower() in _TRUTHY


def get_default_db_path() -> Path:
    """Retourne le chemin de la base DuckDB (SYNC_DB_PATH ou data/friends.duckdb)."""
    raw = os.environ.get("SYNC_DB_PATH", "").strip()
    if raw:
        p = Path(raw)
        return p if p.is_absolute() else REPO_ROOT / p
    return REPO_ROOT / "data" / "friends.duckdb"


# =============================================================================
# SyncSettings
# =============================================================================


@dataclass(frozen=True)
class SyncSettings:
    """Réglages du pipeline (tous surchargeables par variable d'environnement).

    Attributes:
        riot_api_key: Clé Riot (RIOT_API_KEY), None si absente.
        riot_region: Routing plateforme (RIOT_REGION, ex: euw1).
        riot_routing: Routing régional (RIOT_ROUTING, ex: europe).
        min_delay_ms: Délai minimum entre deux appels API (RIOT_MIN_DELAY_MS).
        time_budget_ms: Budget temps d'un run (SYNC_TIME_BUDGET_MS).
        max_friends_per_run: Amis traités par run (SYNC_MAX_FRIENDS_PER_RUN).
        match_id_pages_per_friend: Pages d'IDs par ami et par run.
        max_match_ids_per_friend: IDs liés par ami et par run.
        max_details_per_run: Détails de match récupérés par run (cap global).
        details_per_friend: Détails priorisés par ami traité (None = auto).
        rank_freshness_minutes: Fenêtre de fraîcheur du rang.
        rank_snapshot_interval_minutes: Intervalle minimum entre snapshots identiques.
        match_freshness_minutes: Fenêtre de fraîcheur d'un payload de match.
        timeline_freshness_minutes: Fenêtre de fraîcheur d'une timeline.
        fetch_timeline: Récupérer les timelines (FETCH_TIMELINE=1).
        global_lock_ttl_ms: TTL du verrou global.
        friend_lock_ttl_ms: TTL du verrou par ami.
        cron_ceiling_ms: Plafond total de la boucle cron.
        cron_tick_budget_ms: Budget par tick de la boucle cron.
        cron_max_loops: Nombre maximum de ticks.
        debug_riot: Logs détaillés des appels Riot (DEBUG_RIOT).
    """

    riot_api_key: str | None = None
    riot_region: str = "euw1"
    riot_routing: str = "europe"
    min_delay_ms: int = 130
    time_budget_ms: int = 240_000
    max_friends_per_run: int = 5
    match_id_pages_per_friend: int = 1
    max_match_ids_per_friend: int = 100
    max_details_per_run: int = 15
    details_per_friend: int | None = None
    rank_freshness_minutes: int = 10
    rank_snapshot_interval_minutes: int = 60
    match_freshness_minutes: int = 30
    timeline_freshness_minutes: int = 24 * 60
    fetch_timeline: bool = False
    global_lock_ttl_ms: int = 10 * 60_000
    friend_lock_ttl_ms: int = 5 * 60_000
    cron_ceiling_ms: int = 280_000
    cron_tick_budget_ms: int = 55_000
    cron_max_loops: int = 20
    debug_riot: bool = False

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        load_dotenv: bool = True,
    ) -> SyncSettings:
        """Construit les réglages depuis l'environnement.

        Args:
            env: Mapping à lire (os.environ si None).
            load_dotenv: Charger .env.local / .env avant lecture (ignoré si env fourni).

        Returns:
            SyncSettings bornés.
        """
        if env is None:
            if load_dotenv:
                load_dotenv_if_present()
            env = os.environ

        api_key = (env.get("RIOT_API_KEY") or "").strip() or None
        details_per_friend_raw = env.get("SYNC_DETAILS_PER_FRIEND_PER_RUN")

        return cls(
            riot_api_key=api_key,
            riot_region=(env.get("RIOT_REGION") or "euw1").strip().lower(),
            riot_routing=(env.get("RIOT_ROUTING") or "europe").strip().lower(),
            min_delay_ms=clamp_int(env.get("RIOT_MIN_DELAY_MS"), 130, 0, 5_000),
            time_budget_ms=clamp_int(env.get("SYNC_TIME_BUDGET_MS"), 240_000, 10_000, 290_000),
            max_friends_per_run=clamp_int(env.get("SYNC_MAX_FRIENDS_PER_RUN"), 5, 1, 50),
            match_id_pages_per_friend=clamp_int(
                env.get("SYNC_MATCH_ID_PAGES_PER_FRIEND"), 1, 0, 10
            ),
            max_match_ids_per_friend=clamp_int(
                env.get("SYNC_MAX_MATCH_IDS_PER_FRIEND_PER_RUN"), 100, 1, 5_000
            ),
            max_details_per_run=clamp_int(
                env.get("MATCH_DETAILS_PER_RUN") or env.get("SYNC_MAX_MATCH_DETAILS_PER_RUN"),
                15,
                0,
                400,
            ),
            details_per_friend=(
                clamp_int(details_per_friend_raw, 3, 0, 25)
                if details_per_friend_raw not in (None, "")
                else None
            ),
            rank_freshness_minutes=clamp_int(env.get("RANK_FRESHNESS_MINUTES"), 10, 1, 24 * 60),
            rank_snapshot_interval_minutes=clamp_int(
                env.get("RANK_SNAPSHOT_INTERVAL_MINUTES"), 60, 1, 7 * 24 * 60
            ),
            match_freshness_minutes=clamp_int(env.get("MATCH_FRESHNESS_MINUTES"), 30, 1, 7 * 24 * 60),
            timeline_freshness_minutes=clamp_int(
                env.get("TIMELINE_FRESHNESS_MINUTES"), 24 * 60, 1, 30 * 24 * 60
            ),
            fetch_timeline=env.get("FETCH_TIMELINE") == "1",
            global_lock_ttl_ms=clamp_int(
                env.get("SYNC_GLOBAL_LOCK_TTL_MS"), 10 * 60_000, 10_000, 60 * 60_000
            ),
            friend_lock_ttl_ms=clamp_int(
                env.get("SYNC_FRIEND_LOCK_TTL_MS"), 5 * 60_000, 10_000, 60 * 60_000
            ),
            cron_ceiling_ms=clamp_int(env.get("CRON_CEILING_MS"), 280_000, 10_000, 900_000),
            cron_tick_budget_ms=clamp_int(env.get("CRON_TICK_BUDGET_MS"), 55_000, 10_000, 290_000),
            cron_max_loops=clamp_int(env.get("CRON_MAX_LOOPS"), 20, 1, 100),
            debug_riot=env_flag(env.get("DEBUG_RIOT")),
        )
