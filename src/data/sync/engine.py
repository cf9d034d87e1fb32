"""Orchestrateur d'un run de synchronisation.

Ce module contient le SyncPipeline qui enchaîne, sous verrou global :
sélection des amis → rang + IDs de match (par ami, sous verrou) →
détails de match → réparation des rosters → reporting.

Usage:
    async with RiotAPIClient.from_settings(settings) as client:
        pipeline = SyncPipeline(repo, client, settings)

        # Sync incrémentale (première page d'IDs de chaque ami)
        result = await pipeline.run_sync(SyncOptions())
        print(result.to_message())

        # Backfill depuis une date
        result = await pipeline.run_sync(SyncOptions(from_date="2024-01-01"))
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from src.config import SyncSettings, clamp_int
from src.data.repositories.protocol import SyncRepository
from src.data.sync.api_client import RequestContext, RiotAPIClient, RiotAPIError
from src.data.sync.friend_sync import MATCH_IDS_PAGE_SIZE, FriendSync
from src.data.sync.locks import (
    DuckDBLockStore,
    LockStore,
    friend_lock_key,
    global_sync_lock,
    release_quietly,
)
from src.data.sync.models import (
    FriendRow,
    FriendSyncResult,
    PendingWork,
    SyncMode,
    SyncOptions,
    SyncProgress,
    SyncResult,
    TimeBudget,
    utc_now,
)
from src.data.sync.transformers import parse_from_date

logger = logging.getLogger(__name__)

# Bornes des options d'un run
MIN_BUDGET_MS = 10_000
MAX_BUDGET_MS = 290_000
MAX_FRIENDS_PER_RUN = 50
MAX_MATCH_IDS_PER_RUN = 5_000
MAX_ID_PAGES_PER_FRIEND = 10
MAX_DETAILS_PER_RUN = 400

# Rosters reconstruits au plus par run
REPAIR_LIMIT_PER_RUN = 25

# Délais conseillés avant le tick suivant
NEXT_DELAY_LATEST_MS = 650
NEXT_DELAY_BACKFILL_MS = 900
NEXT_DELAY_IDLE_MS = 1_200

FRIEND_LOCKED_ERROR = "Friend locked (another sync in progress)"


class SyncPipeline:
    """Pipeline de synchronisation des amis.

    Le repository est synchrone (DuckDB) ; seuls les appels Riot sont
    attendus. Les échecs par ami sont capturés dans le résultat, les
    échecs de configuration (date invalide, ami inconnu, verrou global
    déjà pris) remontent à l'appelant.

    Args:
        repo: Repository de persistance.
        client: Client API Riot (déjà ouvert).
        settings: Réglages du pipeline.
        lock_store: Stockage des verrous (DuckDBLockStore sur repo si None).
        clock: Horloge UTC.
        monotonic: Horloge monotone du budget temps (secondes).
    """

    def __init__(
        self,
        repo: SyncRepository,
        client: RiotAPIClient,
        settings: SyncSettings,
        *,
        lock_store: LockStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._client = client
        self._settings = settings
        self._clock = clock
        self._monotonic = monotonic
        self._locks = lock_store or DuckDBLockStore(repo, clock=clock)
        self._friends = FriendSync(repo, client, settings, clock=clock)

    @property
    def friend_sync(self) -> FriendSync:
        return self._friends

    # =========================================================================
    # Run
    # =========================================================================

    async def run_sync(self, options: SyncOptions | None = None) -> SyncResult:
        """Exécute un run complet sous verrou global.

        Args:
            options: Options du run (défauts si None).

        Returns:
            SyncResult avec les résultats par ami et les indices de reprise.

        Raises:
            ValueError: Date de backfill invalide.
            FriendNotFoundError: friend_id inconnu.
            SyncAlreadyRunningError: Un autre run détient le verrou global.
        """
        options = options or SyncOptions()
        settings = self._settings

        mode = options.resolved_mode()
        from_date = options.from_date.strip() if options.from_date else None
        from_ts = parse_from_date(from_date) if from_date else None
        if mode == "backfill" and from_ts is None:
            raise ValueError("Le mode backfill nécessite une date 'from' (YYYY-MM-DD).")

        budget_ms = clamp_int(options.time_budget_ms, settings.time_budget_ms, MIN_BUDGET_MS, MAX_BUDGET_MS)
        max_details = clamp_int(settings.max_details_per_run, 15, 0, MAX_DETAILS_PER_RUN)
        max_pages = clamp_int(settings.match_id_pages_per_friend, 1, 0, MAX_ID_PAGES_PER_FRIEND)

        if options.friend_id:
            # Ami unique : count devient le cap d'IDs de ce run
            max_friends = 1
            max_ids = clamp_int(
                options.count if options.count is not None else options.max,
                settings.max_match_ids_per_friend,
                1,
                MAX_MATCH_IDS_PER_RUN,
            )
            max_pages = max(max_pages, math.ceil(max_ids / MATCH_IDS_PAGE_SIZE))
        else:
            max_friends = clamp_int(options.count, settings.max_friends_per_run, 1, MAX_FRIENDS_PER_RUN)
            max_ids = clamp_int(options.max, settings.max_match_ids_per_friend, 1, MAX_MATCH_IDS_PER_RUN)

        result = SyncResult(mode=mode, from_date=from_date, count=max_friends)
        result.started_at = self._clock()

        async with global_sync_lock(self._locks, settings.global_lock_ttl_ms):
            budget = TimeBudget(budget_ms, clock=self._monotonic)
            friends = self._select_friends(mode, from_ts, max_friends, options.friend_id)
            logger.info(f"[{mode}] {len(friends)} ami(s) sélectionné(s), budget {budget_ms} ms")

            processed: list[str] = []
            stopped_early = False
            new_links = 0

            for friend in friends:
                if budget.should_stop():
                    stopped_early = True
                    logger.info("Budget temps atteint, arrêt avant l'ami suivant")
                    break
                friend_result = await self._sync_one(
                    friend,
                    mode=mode,
                    from_ts=from_ts,
                    max_ids=max_ids,
                    max_pages=max_pages,
                    budget=budget,
                )
                result.results.append(friend_result)
                if friend_result.ok and not friend_result.skipped:
                    processed.append(friend.id)
                    new_links += friend_result.matches_new

            details_completed = 0
            if max_details > 0 and not budget.should_stop():
                candidates = self._friends.select_detail_candidates(
                    processed, mode=mode, limit=max_details, max_friends=max_friends
                )
                if candidates:
                    outcome = await self._friends.fetch_match_details(candidates, budget=budget)
                    details_completed = outcome.completed
                    stopped_early = stopped_early or outcome.stopped_early
                    if outcome.failed:
                        logger.warning(f"{outcome.failed} détail(s) de match en échec")
            elif max_details > 0:
                stopped_early = True

            repaired = 0
            if not budget.should_stop():
                repaired = self._friends.repair_participants(REPAIR_LIMIT_PER_RUN)

            pending_details = self._repo.count_incomplete_matches()
            pending_backfill = self._repo.count_unfinished_backfills(
                from_ts if mode == "backfill" else None
            )

            result.progress = SyncProgress(
                friends_processed=len(processed),
                details_fetched=details_completed,
                participants_repaired=repaired,
                elapsed_ms=budget.elapsed_ms,
                budget_ms=budget_ms,
                stopped_early=stopped_early or budget.should_stop(),
            )

        result.pending = PendingWork(match_details=pending_details, backfill_friends=pending_backfill)
        result.done = pending_details == 0 and (mode != "backfill" or pending_backfill == 0)
        result.next_delay_ms = self._next_delay_ms(
            mode, worked=(details_completed + new_links + repaired) > 0
        )
        result.finished_at = self._clock()

        logger.info(result.to_message())
        return result

    @staticmethod
    def _next_delay_ms(mode: SyncMode, *, worked: bool) -> int:
        if not worked:
            return NEXT_DELAY_IDLE_MS
        return NEXT_DELAY_BACKFILL_MS if mode == "backfill" else NEXT_DELAY_LATEST_MS

    def _select_friends(
        self, mode: SyncMode, from_ts: int | None, limit: int, friend_id: str | None
    ) -> list[FriendRow]:
        if friend_id:
            return [self._friends.get_friend(friend_id)]
        if mode == "backfill" and from_ts is not None:
            return self._repo.list_backfill_candidates(from_ts, limit)
        return self._repo.list_friends_by_staleness(limit)

    async def _sync_one(
        self,
        friend: FriendRow,
        *,
        mode: SyncMode,
        from_ts: int | None,
        max_ids: int,
        max_pages: int,
        budget: TimeBudget,
    ) -> FriendSyncResult:
        """Rang puis IDs de match d'un ami, sous verrou par ami."""
        result = FriendSyncResult(friend_id=friend.id, riot=friend.riot_id)
        key = friend_lock_key(friend.id)
        locked = False

        try:
            locked = self._locks.try_acquire(key, self._settings.friend_lock_ttl_ms)
            if not locked:
                logger.info(f"{friend.riot_id} verrouillé, ignoré pour ce run")
                result.skipped = True
                result.error = FRIEND_LOCKED_ERROR
                return result

            result.rank = await self._friends.sync_friend_rank(friend)
            link = await self._friends.link_match_ids(
                friend,
                mode=mode,
                from_ts=from_ts,
                max_per_run=max_ids,
                max_pages=max_pages,
                budget=budget,
            )
            result.matches_linked = link.linked
            result.matches_new = link.created
            result.match_ids_pages = link.pages
        except Exception as e:
            result.ok = False
            result.error = str(e) or type(e).__name__
            logger.warning(f"Sync de {friend.riot_id} en échec: {result.error}")
        finally:
            if locked:
                release_quietly(self._locks, key)

        return result

    # =========================================================================
    # Statut et santé
    # =========================================================================

    def get_sync_status(self, recent: int = 15) -> dict[str, Any]:
        """Compteurs et derniers états de sync (lecture seule)."""
        return self._repo.get_sync_status(recent)


async def check_riot_health(client: RiotAPIClient) -> dict[str, Any]:
    """Vérifie que la clé Riot est acceptée (status-v4 de la plateforme).

    Returns:
        {"ok": True, "platform": ...} ou {"ok": False, "status": ..., "hint": ...}.
    """
    try:
        status = await client.get_platform_status(context=RequestContext("health"))
    except RiotAPIError as e:
        hint = None
        if e.status in (401, 403):
            hint = "Clé Riot invalide ou expirée (les clés de développement expirent après 24 h)."
        elif e.is_rate_limited:
            hint = "Quota Riot atteint, réessaie plus tard."
        return {"ok": False, "status": e.status, "error": str(e), "hint": hint}

    return {
        "ok": True,
        "platform": status.get("id") or status.get("name"),
        "incidents": len(status.get("incidents") or []),
        "maintenances": len(status.get("maintenances") or []),
    }
