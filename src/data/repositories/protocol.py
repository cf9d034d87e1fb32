"""
Protocole (interface) du repository de synchronisation.
(Protocol/interface for the sync repository)

HOW IT WORKS:
Ce Protocol définit le contrat de persistance dont dépend le pipeline
(amis, curseurs, matchs, participants, snapshots de rang, lignes de verrou).

Garanties attendues de toute implémentation :
- Création de placeholders et de liens idempotente (doublons ignorés)
- Upsert des participants par clé naturelle (match_id, puuid)
- Acquisition des verrous par mise à jour conditionnelle atomique
- Un état intermédiaire (placeholder sans lien, lien sans détail) est valide
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from src.data.sync.models import (
    FriendRow,
    MatchFields,
    MatchParticipantRow,
    MatchRow,
    RankInfo,
    RankSnapshotRow,
    SyncStateRow,
)


@runtime_checkable
class SyncRepository(Protocol):
    """
    Interface abstraite de persistance du pipeline.
    (Abstract persistence interface of the sync pipeline)
    """

    # =========================================================================
    # Amis
    # =========================================================================

    @abstractmethod
    def create_friend(
        self,
        riot_name: str,
        riot_tag: str,
        *,
        region: str = "euw1",
        avatar_url: str | None = None,
        friend_id: str | None = None,
    ) -> FriendRow:
        """Crée un ami (action explicite de l'utilisateur)."""
        ...

    @abstractmethod
    def get_friend(self, friend_id: str) -> FriendRow | None: ...

    @abstractmethod
    def find_friend_by_riot_id(self, riot_name: str, riot_tag: str) -> FriendRow | None: ...

    @abstractmethod
    def list_friends(self) -> list[FriendRow]:
        """Tous les amis, triés par date de création."""
        ...

    @abstractmethod
    def list_friends_by_staleness(self, limit: int) -> list[FriendRow]:
        """Amis triés par last_sync_at croissant (jamais synchronisés d'abord)."""
        ...

    @abstractmethod
    def list_backfill_candidates(self, from_ts: int, limit: int) -> list[FriendRow]:
        """
        Amis ayant du travail de backfill pour cette borne basse.

        Un ami a du travail si son état est absent, si son curseur n'est pas
        épuisé, ou si sa borne basse stockée diffère de `from_ts`. Tri par
        updated_at de l'état croissant.
        """
        ...

    @abstractmethod
    def set_friend_puuid(self, friend_id: str, puuid: str) -> str:
        """
        Enregistre le PUUID s'il est encore NULL (immuable ensuite).

        Returns:
            Le PUUID effectivement stocké.
        """
        ...

    @abstractmethod
    def set_friend_summoner_id(self, friend_id: str, summoner_id: str) -> None: ...

    @abstractmethod
    def update_friend_rank(
        self, friend_id: str, solo: RankInfo, flex: RankInfo, fetched_at: datetime
    ) -> None: ...

    @abstractmethod
    def touch_friend_sync(
        self, friend_id: str, at: datetime, *, last_match_id: str | None = None
    ) -> None:
        """Met à jour last_sync_at (et last_match_id s'il est fourni)."""
        ...

    # =========================================================================
    # États de synchronisation
    # =========================================================================

    @abstractmethod
    def ensure_sync_state(self, friend_id: str, at: datetime | None = None) -> SyncStateRow: ...

    @abstractmethod
    def get_sync_state(self, friend_id: str) -> SyncStateRow | None: ...

    @abstractmethod
    def reset_backfill_window(
        self, friend_id: str, from_ts: int, end_ts: int, at: datetime
    ) -> SyncStateRow:
        """Nouvelle borne basse : curseur à 0, done à False, borne haute gelée."""
        ...

    @abstractmethod
    def freeze_backfill_window(
        self, friend_id: str, from_ts: int, end_ts: int, at: datetime
    ) -> SyncStateRow:
        """Même borne basse : réécrit la fenêtre sans toucher au curseur."""
        ...

    @abstractmethod
    def save_cursor(self, friend_id: str, cursor: int, done: bool, at: datetime) -> None: ...

    @abstractmethod
    def mark_state_run(self, friend_id: str, at: datetime) -> None: ...

    # =========================================================================
    # Matchs et participants
    # =========================================================================

    @abstractmethod
    def create_match_placeholders(self, match_ids: list[str]) -> int:
        """Crée les lignes matches absentes (payload vide, fetched_at = epoch)."""
        ...

    @abstractmethod
    def link_friend_matches(self, friend_id: str, match_ids: list[str], at: datetime) -> int: ...

    @abstractmethod
    def get_match(self, match_id: str) -> MatchRow | None: ...

    @abstractmethod
    def save_match_detail(
        self, match_id: str, raw: dict[str, Any], fields: MatchFields, fetched_at: datetime
    ) -> None:
        """Crée ou écrase la ligne du match avec son payload complet."""
        ...

    @abstractmethod
    def save_match_timeline(
        self, match_id: str, timeline: dict[str, Any], fetched_at: datetime
    ) -> None: ...

    @abstractmethod
    def count_participants(self, match_id: str) -> int: ...

    @abstractmethod
    def upsert_participants(self, rows: list[MatchParticipantRow]) -> int: ...

    # =========================================================================
    # Sélection et reporting
    # =========================================================================

    @abstractmethod
    def list_incomplete_match_ids_for_friend(self, friend_id: str, limit: int) -> list[str]:
        """Matchs incomplets d'un ami, lien le plus récent d'abord."""
        ...

    @abstractmethod
    def list_incomplete_match_ids(self, limit: int) -> list[str]:
        """Matchs incomplets, lien le plus ancien d'abord."""
        ...

    @abstractmethod
    def list_friend_ids_with_incomplete_matches(self, limit: int) -> list[str]: ...

    @abstractmethod
    def list_matches_missing_participants(self, limit: int, roster_size: int) -> list[str]: ...

    @abstractmethod
    def count_incomplete_matches(self) -> int: ...

    @abstractmethod
    def count_unfinished_backfills(self, from_ts: int | None = None) -> int: ...

    @abstractmethod
    def get_sync_status(self, recent: int = 15) -> dict[str, Any]: ...

    @abstractmethod
    def list_friend_participants(self, take_matches: int) -> list[MatchParticipantRow]:
        """Participations des amis dans les N matchs complets les plus récents."""
        ...

    # =========================================================================
    # Snapshots de rang
    # =========================================================================

    @abstractmethod
    def get_latest_rank_snapshot(self, friend_id: str, queue_type: str) -> RankSnapshotRow | None: ...

    @abstractmethod
    def add_rank_snapshot(self, row: RankSnapshotRow) -> None: ...

    # =========================================================================
    # Lignes de verrou
    # =========================================================================

    @abstractmethod
    def ensure_lock_storage(self) -> None:
        """(Re)crée la table et la ligne du verrou global."""
        ...

    @abstractmethod
    def try_lock_global(self, ttl_ms: int, now: datetime) -> bool: ...

    @abstractmethod
    def release_global(self, now: datetime) -> None: ...

    @abstractmethod
    def try_lock_friend(self, friend_id: str, ttl_ms: int, now: datetime) -> bool: ...

    @abstractmethod
    def release_friend(self, friend_id: str, now: datetime) -> None: ...
