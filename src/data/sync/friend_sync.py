"""Synchronisation par ami : identité, rang, IDs de match, détails.

Ce module contient les étapes unitaires du pipeline, appelées par
SyncPipeline (engine.py) :
- ensure_puuid / ensure_summoner_id : identifiants résolus une seule fois
- sync_friend_rank : rang solo/flex avec fenêtre de fraîcheur et snapshots
- link_match_ids : curseur d'IDs de match (latest ou backfill)
- fetch_match_details / repair_participants : payloads et rosters
- select_detail_candidates : priorisation des détails à récupérer

Usage:
    syncer = FriendSync(repo, client, settings)
    await syncer.sync_friend_rank(friend)
    outcome = await syncer.link_match_ids(friend, mode="latest", max_per_run=20)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import duckdb

from src.config import SyncSettings
from src.data.domain.refdata import TRACKED_RANKED_QUEUES, RankedQueue
from src.data.repositories.protocol import SyncRepository
from src.data.sync.api_client import RequestContext, RiotAPIClient, RiotAPIError
from src.data.sync.models import (
    FULL_ROSTER_SIZE,
    DetailFetchOutcome,
    FriendRow,
    LinkOutcome,
    MatchRow,
    RankInfo,
    RankSnapshotRow,
    RankSyncOutcome,
    SyncMode,
    TimeBudget,
    utc_now,
)
from src.data.sync.transformers import (
    dedupe_keep_order,
    extract_match_fields,
    extract_participants,
    has_match_payload,
    pick_rank,
)

logger = logging.getLogger(__name__)

# Taille de page maximale de match-v5 ids
MATCH_IDS_PAGE_SIZE = 100

# Amis supplémentaires considérés pour les détails en backfill
MAX_EXTRA_DETAIL_FRIENDS = 25


class FriendNotFoundError(LookupError):
    """Ami inconnu en base."""


def _is_fresh(fetched_at: datetime | None, now: datetime, minutes: int) -> bool:
    return fetched_at is not None and now - fetched_at < timedelta(minutes=minutes)


class FriendSync:
    """Étapes de synchronisation d'un ami.

    Args:
        repo: Repository de persistance.
        client: Client API Riot (déjà ouvert).
        settings: Réglages du pipeline.
        clock: Horloge UTC (injectable pour les tests).
    """

    def __init__(
        self,
        repo: SyncRepository,
        client: RiotAPIClient,
        settings: SyncSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repo
        self._client = client
        self._settings = settings
        self._clock = clock

    def get_friend(self, friend_id: str) -> FriendRow:
        friend = self._repo.get_friend(friend_id)
        if friend is None:
            raise FriendNotFoundError(f"Ami introuvable: {friend_id}")
        return friend

    # =========================================================================
    # Identité
    # =========================================================================

    async def ensure_puuid(self, friend: FriendRow) -> str:
        """Retourne le PUUID de l'ami, résolu via account-v1 au premier appel."""
        if friend.puuid:
            return friend.puuid

        account = await self._client.resolve_account(
            friend.riot_name,
            friend.riot_tag,
            context=RequestContext("account/by-riot-id", friend.id),
        )
        friend.puuid = self._repo.set_friend_puuid(friend.id, account.puuid)
        logger.info(f"PUUID résolu pour {friend.riot_id}")
        return friend.puuid

    async def ensure_summoner_id(self, friend: FriendRow) -> str:
        """Retourne l'identifiant d'invocateur (nécessite le PUUID)."""
        puuid = await self.ensure_puuid(friend)
        if friend.summoner_id:
            return friend.summoner_id

        summoner_id = await self._client.resolve_rank_ref(
            puuid, context=RequestContext("summoner/by-puuid", friend.id)
        )
        self._repo.set_friend_summoner_id(friend.id, summoner_id)
        friend.summoner_id = summoner_id
        return summoner_id

    # =========================================================================
    # Rang
    # =========================================================================

    async def sync_friend_rank(self, friend: FriendRow) -> RankSyncOutcome:
        """Met à jour le rang solo/flex de l'ami.

        Ignoré (aucun appel API) si le rang a été récupéré dans la fenêtre de
        fraîcheur. Un snapshot est ajouté par file quand le rang a changé ou
        que le dernier snapshot est plus vieux que l'intervalle configuré.
        """
        now = self._clock()
        if _is_fresh(friend.rank_fetched_at, now, self._settings.rank_freshness_minutes):
            return RankSyncOutcome(skipped=True)

        summoner_id = await self.ensure_summoner_id(friend)
        entries = await self._client.get_rank_entries(
            summoner_id, context=RequestContext("league/entries/by-summoner", friend.id)
        )

        solo = pick_rank(entries, RankedQueue.SOLO)
        flex = pick_rank(entries, RankedQueue.FLEX)
        self._repo.update_friend_rank(friend.id, solo, flex, now)
        friend.solo, friend.flex, friend.rank_fetched_at = solo, flex, now

        by_queue: dict[RankedQueue, RankInfo] = {RankedQueue.SOLO: solo, RankedQueue.FLEX: flex}
        for queue in TRACKED_RANKED_QUEUES:
            self._maybe_snapshot(friend.id, queue, by_queue[queue], now)

        return RankSyncOutcome(skipped=False)

    def _maybe_snapshot(self, friend_id: str, queue: RankedQueue, info: RankInfo, now: datetime) -> None:
        last = self._repo.get_latest_rank_snapshot(friend_id, queue.value)
        changed = last is None or not last.same_rank_as(info)
        too_soon = last is not None and _is_fresh(
            last.created_at, now, self._settings.rank_snapshot_interval_minutes
        )
        if not changed and too_soon:
            return
        self._repo.add_rank_snapshot(
            RankSnapshotRow(
                friend_id=friend_id,
                queue_type=queue.value,
                tier=info.tier,
                division=info.division,
                lp=info.lp,
                wins=info.wins,
                losses=info.losses,
                created_at=now,
            )
        )

    # =========================================================================
    # IDs de match
    # =========================================================================

    async def link_match_ids(
        self,
        friend: FriendRow,
        *,
        mode: SyncMode,
        from_ts: int | None = None,
        max_per_run: int = 100,
        max_pages: int = 1,
        budget: TimeBudget | None = None,
    ) -> LinkOutcome:
        """Avance le curseur d'IDs de match de l'ami.

        Args:
            friend: Ami à traiter.
            mode: "latest" (première page) ou "backfill" (pages depuis from_ts).
            from_ts: Borne basse du backfill (secondes epoch UTC).
            max_per_run: Nombre max d'IDs liés pendant ce run.
            max_pages: Nombre max de pages (backfill).
            budget: Budget temps du run.

        Returns:
            LinkOutcome (done = curseur de backfill épuisé).

        Raises:
            ValueError: En backfill sans borne basse.
        """
        puuid = await self.ensure_puuid(friend)
        if mode == "latest":
            return await self._link_latest(friend, puuid, max_per_run)
        if from_ts is None:
            raise ValueError("Le backfill nécessite une date 'from' valide (YYYY-MM-DD).")
        return await self._link_backfill(friend, puuid, from_ts, max_per_run, max_pages, budget)

    def _store_ids(self, friend_id: str, ids: list[str], at: datetime) -> int:
        # Placeholders avant les liens : un lien pointe toujours vers une ligne existante
        self._repo.create_match_placeholders(ids)
        return self._repo.link_friend_matches(friend_id, ids, at)

    async def _link_latest(self, friend: FriendRow, puuid: str, max_per_run: int) -> LinkOutcome:
        count = max(1, min(MATCH_IDS_PAGE_SIZE, max_per_run))
        raw_ids = await self._client.list_match_ids(
            puuid, start=0, count=count, context=RequestContext("match/ids/by-puuid", friend.id)
        )
        ids = dedupe_keep_order(raw_ids)

        now = self._clock()
        created = self._store_ids(friend.id, ids, now)
        self._repo.touch_friend_sync(friend.id, now, last_match_id=ids[0] if ids else None)
        self._repo.mark_state_run(friend.id, now)

        friend.last_sync_at = now
        if ids:
            friend.last_match_id = ids[0]
        return LinkOutcome(linked=len(ids), created=created, pages=1, done=False)

    async def _link_backfill(
        self,
        friend: FriendRow,
        puuid: str,
        from_ts: int,
        max_per_run: int,
        max_pages: int,
        budget: TimeBudget | None,
    ) -> LinkOutcome:
        now = self._clock()
        state = self._repo.ensure_sync_state(friend.id, now)

        if state.backfill_from_ts is not None and state.backfill_from_ts == from_ts:
            end_ts = state.backfill_end_ts if state.backfill_end_ts is not None else int(now.timestamp())
            state = self._repo.freeze_backfill_window(friend.id, from_ts, end_ts, now)
        else:
            end_ts = int(now.timestamp())
            state = self._repo.reset_backfill_window(friend.id, from_ts, end_ts, now)
            logger.info(f"Nouvelle fenêtre de backfill pour {friend.riot_id}: {from_ts} → {end_ts}")

        cursor = state.matchlist_cursor_start
        done = state.matchlist_done
        linked = 0
        created = 0
        pages = 0
        context = RequestContext("match/ids/by-puuid", friend.id)

        try:
            while not done and pages < max_pages and linked < max_per_run:
                if budget is not None and budget.should_stop():
                    break

                count = min(MATCH_IDS_PAGE_SIZE, max_per_run - linked)
                raw_ids = await self._client.list_match_ids(
                    puuid,
                    start=cursor,
                    count=count,
                    start_time=from_ts,
                    end_time=end_ts,
                    context=context,
                )
                pages += 1

                if not raw_ids:
                    done = True
                    break

                ids = dedupe_keep_order(raw_ids)
                created += self._store_ids(friend.id, ids, self._clock())
                linked += len(ids)

                # Le curseur avance du nombre d'IDs réellement renvoyés
                cursor += len(raw_ids)

                if len(raw_ids) < count:
                    done = True
                    break
        finally:
            self._repo.save_cursor(friend.id, cursor, done, self._clock())

        now = self._clock()
        self._repo.touch_friend_sync(friend.id, now)
        friend.last_sync_at = now

        if done:
            logger.info(f"Backfill terminé pour {friend.riot_id} (curseur={cursor})")
        return LinkOutcome(linked=linked, created=created, pages=pages, done=done)

    # =========================================================================
    # Détails de match
    # =========================================================================

    async def fetch_match_details(
        self,
        match_ids: list[str],
        *,
        budget: TimeBudget | None = None,
    ) -> DetailFetchOutcome:
        """Complète les matchs donnés (payload, champs dérivés, participants).

        Un échec sur un match est loggé et n'interrompt pas le lot, sauf un
        429 persistant qui arrête le lot pour ménager le quota.
        """
        outcome = DetailFetchOutcome()

        for match_id in match_ids:
            if budget is not None and budget.should_stop():
                outcome.stopped_early = True
                break
            try:
                await self._complete_match(match_id, outcome)
            except RiotAPIError as e:
                outcome.failed += 1
                logger.warning(f"Détail du match {match_id} en échec: {e}")
                if e.is_rate_limited:
                    outcome.stopped_early = True
                    break
            except duckdb.Error as e:
                outcome.failed += 1
                logger.warning(f"Écriture du match {match_id} en échec: {e}")

        return outcome

    async def _complete_match(self, match_id: str, outcome: DetailFetchOutcome) -> None:
        existing = self._repo.get_match(match_id)
        now = self._clock()

        if existing is not None and existing.is_complete:
            if self._rebuild_participants(existing):
                outcome.rebuilt += 1
            await self._maybe_fetch_timeline(match_id, existing, outcome)
            return

        if (
            existing is not None
            and has_match_payload(existing.raw_json)
            and _is_fresh(existing.fetched_at, now, self._settings.match_freshness_minutes)
        ):
            raw = existing.raw_json
            fetched_at = existing.fetched_at or now
            outcome.reused += 1
        else:
            raw = await self._client.get_match_detail(
                match_id, context=RequestContext("match/by-id")
            )
            fetched_at = self._clock()
            outcome.fetched += 1

        fields = extract_match_fields(raw)
        if fields.game_start_ms is None:
            logger.warning(f"Match {match_id} sans gameStartTimestamp, reste incomplet")

        self._repo.save_match_detail(match_id, raw, fields, fetched_at)
        self._repo.upsert_participants(extract_participants(match_id, raw))
        await self._maybe_fetch_timeline(match_id, existing, outcome)

    def _rebuild_participants(self, match: MatchRow) -> bool:
        """Reconstruit le roster depuis le payload stocké (jamais d'appel API)."""
        if self._repo.count_participants(match.id) >= FULL_ROSTER_SIZE:
            return False
        if not has_match_payload(match.raw_json):
            return False
        rows = extract_participants(match.id, match.raw_json)
        if not rows:
            return False
        self._repo.upsert_participants(rows)
        return True

    async def _maybe_fetch_timeline(
        self, match_id: str, existing: MatchRow | None, outcome: DetailFetchOutcome
    ) -> None:
        if not self._settings.fetch_timeline:
            return
        now = self._clock()
        if (
            existing is not None
            and existing.timeline_json is not None
            and _is_fresh(existing.timeline_fetched_at, now, self._settings.timeline_freshness_minutes)
        ):
            return
        timeline = await self._client.get_match_timeline(
            match_id, context=RequestContext("match/timeline")
        )
        self._repo.save_match_timeline(match_id, timeline, self._clock())
        outcome.timelines += 1

    def repair_participants(self, limit: int) -> int:
        """Reconstruit les rosters incomplets des matchs complets, sans appel API."""
        if limit <= 0:
            return 0
        repaired = 0
        for match_id in self._repo.list_matches_missing_participants(limit, FULL_ROSTER_SIZE):
            match = self._repo.get_match(match_id)
            if match is not None and self._rebuild_participants(match):
                repaired += 1
        if repaired:
            logger.info(f"{repaired} rosters reconstruits depuis les payloads stockés")
        return repaired

    # =========================================================================
    # Sélection des détails
    # =========================================================================

    def details_per_friend(self, mode: SyncMode) -> int:
        if self._settings.details_per_friend is not None:
            return self._settings.details_per_friend
        return 3 if mode == "latest" else 2

    def select_detail_candidates(
        self,
        processed_friend_ids: list[str],
        *,
        mode: SyncMode,
        limit: int,
        max_friends: int,
    ) -> list[str]:
        """Choisit les matchs incomplets à compléter pendant ce run.

        Priorité aux amis traités (matchs les plus récemment liés d'abord),
        plus, en backfill, quelques amis ayant encore des détails manquants.
        Le reste est complété par les matchs incomplets liés depuis le plus
        longtemps, pour que le backfill des autres amis progresse aussi.
        """
        if limit <= 0:
            return []

        seen: set[str] = set()
        out: list[str] = []

        friend_ids = list(processed_friend_ids)
        if mode == "backfill":
            extra = self._repo.list_friend_ids_with_incomplete_matches(
                min(MAX_EXTRA_DETAIL_FRIENDS, max_friends * 4)
            )
            friend_ids = list(dict.fromkeys([*friend_ids, *extra]))

        per_friend = self.details_per_friend(mode)
        if per_friend > 0:
            for fid in friend_ids:
                if len(out) >= limit:
                    break
                need = min(per_friend, limit - len(out))
                added = 0
                for match_id in self._repo.list_incomplete_match_ids_for_friend(fid, need * 6):
                    if added >= need:
                        break
                    if match_id in seen:
                        continue
                    seen.add(match_id)
                    out.append(match_id)
                    added += 1

        if len(out) < limit:
            for match_id in self._repo.list_incomplete_match_ids(limit):
                if len(out) >= limit:
                    break
                if match_id in seen:
                    continue
                seen.add(match_id)
                out.append(match_id)

        return out
