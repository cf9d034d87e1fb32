"""Modèles de données pour le module de synchronisation.

Contient les dataclasses pour :
- Options et résultats de synchronisation (SyncOptions, SyncResult)
- Budget temps d'un run (TimeBudget)
- Lignes DuckDB (FriendRow, SyncStateRow, MatchRow, MatchParticipantRow, ...)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

SyncMode = Literal["latest", "backfill"]

# Taille de roster d'une partie complète (5v5)
FULL_ROSTER_SIZE = 10

# Marge gardée avant l'expiration du budget (pour rendre la main avant le timeout plateforme)
SAFETY_MARGIN_MS = 1_500

# fetched_at des placeholders (toujours considérés comme périmés)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Options et résultats de synchronisation
# =============================================================================


@dataclass
class SyncOptions:
    """Options d'un run de synchronisation.

    Attributes:
        mode: "latest" ou "backfill" (déduit de from_date si None).
        from_date: Borne basse du backfill (YYYY-MM-DD, UTC).
        count: Nombre d'amis par run (ou cap d'IDs en mode ami unique).
        max: Nombre maximum d'IDs de match liés par ami et par run.
        friend_id: Si défini, synchronise uniquement cet ami.
        time_budget_ms: Budget temps du run (surcharge SYNC_TIME_BUDGET_MS).
    """

    mode: SyncMode | None = None
    from_date: str | None = None
    count: int | None = None
    max: int | None = None
    friend_id: str | None = None
    time_budget_ms: int | None = None

    def resolved_mode(self) -> SyncMode:
        """Mode effectif : backfill dès qu'une date est fournie."""
        if self.from_date and self.from_date.strip():
            return "backfill"
        return self.mode or "latest"


@dataclass
class TimeBudget:
    """Budget temps d'un run, vérifié entre chaque étape (jamais en pleine écriture)."""

    budget_ms: int
    safety_margin_ms: int = SAFETY_MARGIN_MS
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(default=-1.0)

    def __post_init__(self) -> None:
        if self.started_at < 0:
            self.started_at = self.clock()

    @property
    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started_at) * 1000)

    @property
    def remaining_ms(self) -> int:
        return self.budget_ms - self.elapsed_ms

    def should_stop(self) -> bool:
        """True quand il reste moins que la marge de sécurité."""
        return self.elapsed_ms >= max(1, self.budget_ms - self.safety_margin_ms)


@dataclass
class RankSyncOutcome:
    """Résultat de la synchronisation du rang d'un ami."""

    skipped: bool


@dataclass
class LinkOutcome:
    """Résultat de l'avancement du curseur d'IDs de match d'un ami."""

    linked: int = 0
    created: int = 0
    pages: int = 0
    done: bool = False


@dataclass
class DetailFetchOutcome:
    """Résultat d'un lot de récupération de détails de match.

    Attributes:
        fetched: Détails récupérés via l'API.
        reused: Détails dérivés d'un payload stocké encore frais (sans appel).
        rebuilt: Rosters reconstruits depuis le payload stocké (sans appel).
        timelines: Timelines récupérées.
        failed: Matchs en échec (erreur loggée, lot poursuivi).
        stopped_early: Lot interrompu (budget temps ou quota épuisé).
    """

    fetched: int = 0
    reused: int = 0
    rebuilt: int = 0
    timelines: int = 0
    failed: int = 0
    stopped_early: bool = False

    @property
    def completed(self) -> int:
        return self.fetched + self.reused


@dataclass
class FriendSyncResult:
    """Résultat par ami d'un run."""

    friend_id: str
    riot: str
    ok: bool = True
    error: str | None = None
    skipped: bool = False
    rank: RankSyncOutcome | None = None
    matches_linked: int = 0
    matches_new: int = 0
    match_ids_pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "friend_id": self.friend_id,
            "riot": self.riot,
            "ok": self.ok,
            "error": self.error,
            "skipped": self.skipped,
            "rank": {"skipped": self.rank.skipped} if self.rank else None,
            "matches_linked": self.matches_linked,
            "matches_new": self.matches_new,
            "match_ids_pages": self.match_ids_pages,
        }


@dataclass
class SyncProgress:
    """Progression agrégée d'un run."""

    friends_processed: int = 0
    details_fetched: int = 0
    participants_repaired: int = 0
    elapsed_ms: int = 0
    budget_ms: int = 0
    stopped_early: bool = False


@dataclass
class PendingWork:
    """Travail restant après un run."""

    match_details: int = 0
    backfill_friends: int = 0


@dataclass
class SyncResult:
    """Résultat d'un run de synchronisation.

    Contient les résultats par ami, les compteurs et les indices de reprise
    (done / next_delay_ms) utilisés par la boucle cron.
    """

    mode: SyncMode
    ok: bool = True
    from_date: str | None = None
    count: int = 0
    results: list[FriendSyncResult] = field(default_factory=list)
    progress: SyncProgress = field(default_factory=SyncProgress)
    pending: PendingWork = field(default_factory=PendingWork)
    done: bool = False
    next_delay_ms: int = 1_200
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> list[FriendSyncResult]:
        return [r for r in self.results if not r.ok]

    def to_message(self) -> str:
        """Message de résumé pour l'UI / les logs."""
        parts = [f"{self.ok_count}/{self.total} amis OK"]
        if self.progress.details_fetched:
            parts.append(f"{self.progress.details_fetched} détails")
        if self.progress.participants_repaired:
            parts.append(f"{self.progress.participants_repaired} rosters reconstruits")
        if self.pending.match_details:
            parts.append(f"{self.pending.match_details} détails en attente")
        if self.mode == "backfill" and self.pending.backfill_friends:
            parts.append(f"{self.pending.backfill_friends} backfills en cours")

        status = "✅" if not self.failed else "⚠️"
        suffix = " (terminé)" if self.done else ""
        return f"{status} [{self.mode}] {', '.join(parts)}{suffix}"

    def to_dict(self) -> dict[str, Any]:
        """Convertit en dict pour sérialisation JSON."""
        return {
            "ok": self.ok,
            "mode": self.mode,
            "from": self.from_date,
            "count": self.count,
            "total": self.total,
            "ok_count": self.ok_count,
            "results": [r.to_dict() for r in self.results],
            "progress": {
                "friends_processed": self.progress.friends_processed,
                "details_fetched": self.progress.details_fetched,
                "participants_repaired": self.progress.participants_repaired,
                "elapsed_ms": self.progress.elapsed_ms,
                "budget_ms": self.progress.budget_ms,
                "stopped_early": self.progress.stopped_early,
            },
            "pending": {
                "match_details": self.pending.match_details,
                "backfill_friends": self.pending.backfill_friends,
            },
            "done": self.done,
            "next_delay_ms": self.next_delay_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# =============================================================================
# Lignes DuckDB
# =============================================================================


@dataclass
class RankInfo:
    """Rang d'une file classée (valeurs nulles si non classé)."""

    tier: str | None = None
    division: str | None = None
    lp: int | None = None
    wins: int | None = None
    losses: int | None = None


@dataclass
class FriendRow:
    """Ligne de la table friends."""

    id: str
    riot_name: str
    riot_tag: str
    region: str = "euw1"
    avatar_url: str | None = None
    puuid: str | None = None
    summoner_id: str | None = None
    solo: RankInfo = field(default_factory=RankInfo)
    flex: RankInfo = field(default_factory=RankInfo)
    last_match_id: str | None = None
    last_sync_at: datetime | None = None
    rank_fetched_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def riot_id(self) -> str:
        return f"{self.riot_name}#{self.riot_tag}"


@dataclass
class SyncStateRow:
    """Ligne de la table friend_sync_state (curseur de pagination par ami)."""

    friend_id: str
    matchlist_cursor_start: int = 0
    matchlist_done: bool = False
    backfill_from_ts: int | None = None
    backfill_end_ts: int | None = None
    sync_lock_until: datetime | None = None
    last_run_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class MatchRow:
    """Ligne de la table matches.

    Un placeholder a un payload vide et fetched_at à l'epoch ; la ligne reste
    incomplète tant que game_start_ms est NULL.
    """

    id: str
    raw_json: dict[str, Any] = field(default_factory=dict)
    timeline_json: dict[str, Any] | None = None
    platform: str | None = None
    game_start_ms: int | None = None
    game_duration_s: int | None = None
    queue_id: int | None = None
    fetched_at: datetime | None = None
    timeline_fetched_at: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.game_start_ms is not None


@dataclass
class MatchFields:
    """Champs scalaires dérivés du payload d'un match."""

    game_start_ms: int | None = None
    game_duration_s: int | None = None
    queue_id: int | None = None
    platform: str | None = None


@dataclass
class MatchParticipantRow:
    """Ligne pour la table match_participants (projection du payload brut)."""

    match_id: str
    puuid: str
    team_id: int | None = None
    win: bool | None = None
    team_win: bool | None = None
    summoner_name: str | None = None
    riot_id_game_name: str | None = None
    riot_id_tagline: str | None = None
    champion_name: str | None = None
    lane: str | None = None
    role: str | None = None
    kills: int | None = None
    deaths: int | None = None
    assists: int | None = None
    gold_earned: int | None = None
    total_damage_dealt_to_champions: int | None = None
    vision_score: int | None = None
    total_minions_killed: int | None = None
    neutral_minions_killed: int | None = None


@dataclass
class RankSnapshotRow:
    """Ligne de la table rank_snapshots (série temporelle append-only)."""

    friend_id: str
    queue_type: str
    tier: str | None = None
    division: str | None = None
    lp: int | None = None
    wins: int | None = None
    losses: int | None = None
    created_at: datetime | None = None

    def same_rank_as(self, info: RankInfo) -> bool:
        return (
            self.tier == info.tier
            and self.division == info.division
            and self.lp == info.lp
            and self.wins == info.wins
            and self.losses == info.losses
        )
