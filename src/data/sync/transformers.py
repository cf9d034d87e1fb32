"""Transformateurs API JSON → lignes DuckDB.

Ce module valide les réponses de l'API Riot à la frontière (modèles Pydantic,
chaque champ est parsé ou mis à None) puis les convertit en rows prêtes pour
DuckDB.

Architecture:
- AccountInfo / SummonerInfo / RankEntry : payloads account, summoner, league
- MatchInfoInput / ParticipantInput / TeamInput : payload match-v5 (info)
- extract_match_fields() : payload → MatchFields (champs scalaires)
- extract_participants() : payload → [MatchParticipantRow]
- pick_rank() : entrées league → RankInfo d'une file
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.data.domain.refdata import RankedQueue
from src.data.sync.models import MatchFields, MatchParticipantRow, RankInfo

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers de parsing
# =============================================================================


def _safe_int(v: Any) -> int | None:
    """Convertit un nombre JSON en int (None pour bool, NaN, texte...)."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        if math.isnan(v) or math.isinf(v):
            return None
        return int(v)
    return None


def _safe_str(v: Any) -> str | None:
    return v if isinstance(v, str) else None


def _safe_bool(v: Any) -> bool | None:
    return v if isinstance(v, bool) else None


def dedupe_keep_order(ids: Any) -> list[str]:
    """Dédoublonne une liste d'IDs en gardant l'ordre (ignore les valeurs non textuelles)."""
    if not isinstance(ids, list):
        return []
    out: list[str] = []
    seen: set[str] = set()
    for mid in ids:
        if not isinstance(mid, str) or not mid:
            continue
        if mid in seen:
            continue
        seen.add(mid)
        out.append(mid)
    return out


def parse_from_date(value: str) -> int:
    """Convertit une date YYYY-MM-DD (minuit UTC) en secondes epoch.

    Raises:
        ValueError: Si la date est invalide.
    """
    try:
        d = datetime.strptime(value.strip(), "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Date 'from' invalide: {value!r} (format attendu YYYY-MM-DD)") from e
    return int(d.timestamp())


# =============================================================================
# Modèles de frontière (validation Pydantic)
# =============================================================================


class _RiotPayload(BaseModel):
    """Base : ignore les champs inconnus, accepte noms Python et alias camelCase."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AccountInfo(_RiotPayload):
    """Compte Riot (account-v1 by-riot-id)."""

    puuid: str = Field(..., min_length=1)
    game_name: str | None = Field(default=None, alias="gameName")
    tag_line: str | None = Field(default=None, alias="tagLine")

    @field_validator("game_name", "tag_line", mode="before")
    @classmethod
    def parse_optional_str(cls, v: Any) -> str | None:
        return _safe_str(v)


class SummonerInfo(_RiotPayload):
    """Invocateur (summoner-v4 by-puuid). Seul l'identifiant nous intéresse."""

    id: str | None = None
    puuid: str | None = None
    summoner_level: int | None = Field(default=None, alias="summonerLevel")

    @field_validator("id", "puuid", mode="before")
    @classmethod
    def parse_optional_str(cls, v: Any) -> str | None:
        return _safe_str(v) or None

    @field_validator("summoner_level", mode="before")
    @classmethod
    def parse_optional_int(cls, v: Any) -> int | None:
        return _safe_int(v)


class RankEntry(_RiotPayload):
    """Entrée league-v4 (une par file classée)."""

    queue_type: str | None = Field(default=None, alias="queueType")
    tier: str | None = None
    rank: str | None = None
    league_points: int | None = Field(default=None, alias="leaguePoints")
    wins: int | None = None
    losses: int | None = None

    @field_validator("queue_type", "tier", "rank", mode="before")
    @classmethod
    def parse_optional_str(cls, v: Any) -> str | None:
        return _safe_str(v)

    @field_validator("league_points", "wins", "losses", mode="before")
    @classmethod
    def parse_optional_int(cls, v: Any) -> int | None:
        return _safe_int(v)

    def to_rank_info(self) -> RankInfo:
        return RankInfo(
            tier=self.tier,
            division=self.rank,
            lp=self.league_points,
            wins=self.wins,
            losses=self.losses,
        )


class ParticipantInput(_RiotPayload):
    """Participant d'un match (info.participants[])."""

    puuid: str | None = None
    team_id: int | None = Field(default=None, alias="teamId")
    win: bool | None = None
    summoner_name: str | None = Field(default=None, alias="summonerName")
    riot_id_game_name: str | None = Field(default=None, alias="riotIdGameName")
    riot_id_tagline: str | None = Field(default=None, alias="riotIdTagline")
    champion_name: str | None = Field(default=None, alias="championName")
    lane: str | None = None
    role: str | None = None
    kills: int | None = None
    deaths: int | None = None
    assists: int | None = None
    gold_earned: int | None = Field(default=None, alias="goldEarned")
    total_damage_dealt_to_champions: int | None = Field(
        default=None, alias="totalDamageDealtToChampions"
    )
    vision_score: int | None = Field(default=None, alias="visionScore")
    total_minions_killed: int | None = Field(default=None, alias="totalMinionsKilled")
    neutral_minions_killed: int | None = Field(default=None, alias="neutralMinionsKilled")

    @field_validator(
        "puuid",
        "summoner_name",
        "riot_id_game_name",
        "riot_id_tagline",
        "champion_name",
        "lane",
        "role",
        mode="before",
    )
    @classmethod
    def parse_optional_str(cls, v: Any) -> str | None:
        return _safe_str(v)

    @field_validator("win", mode="before")
    @classmethod
    def parse_optional_bool(cls, v: Any) -> bool | None:
        return _safe_bool(v)

    @field_validator(
        "team_id",
        "kills",
        "deaths",
        "assists",
        "gold_earned",
        "total_damage_dealt_to_champions",
        "vision_score",
        "total_minions_killed",
        "neutral_minions_killed",
        mode="before",
    )
    @classmethod
    def parse_optional_int(cls, v: Any) -> int | None:
        return _safe_int(v)


class TeamInput(_RiotPayload):
    """Équipe d'un match (info.teams[])."""

    team_id: int | None = Field(default=None, alias="teamId")
    win: bool | None = None

    @field_validator("team_id", mode="before")
    @classmethod
    def parse_optional_int(cls, v: Any) -> int | None:
        return _safe_int(v)

    @field_validator("win", mode="before")
    @classmethod
    def parse_optional_bool(cls, v: Any) -> bool | None:
        return _safe_bool(v)


class MatchInfoInput(_RiotPayload):
    """Bloc `info` d'un payload match-v5.

    Les participants et équipes sont gardés bruts ici et validés un par un,
    pour qu'une entrée invalide n'invalide pas tout le match.
    """

    game_start_timestamp: int | None = Field(default=None, alias="gameStartTimestamp")
    game_duration: int | None = Field(default=None, alias="gameDuration")
    queue_id: int | None = Field(default=None, alias="queueId")
    platform_id: str | None = Field(default=None, alias="platformId")
    participants: list[Any] = Field(default_factory=list)
    teams: list[Any] = Field(default_factory=list)

    @field_validator("game_start_timestamp", "game_duration", "queue_id", mode="before")
    @classmethod
    def parse_optional_int(cls, v: Any) -> int | None:
        return _safe_int(v)

    @field_validator("platform_id", mode="before")
    @classmethod
    def parse_optional_str(cls, v: Any) -> str | None:
        return _safe_str(v)

    @field_validator("participants", "teams", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[Any]:
        return v if isinstance(v, list) else []


# =============================================================================
# Transformations
# =============================================================================


def has_match_payload(raw: Any) -> bool:
    """True si le payload ressemble à un match complet (metadata + info)."""
    return isinstance(raw, dict) and "info" in raw and "metadata" in raw


def parse_match_info(raw: Any) -> MatchInfoInput | None:
    """Valide le bloc info d'un payload, None si absent ou illisible."""
    if not isinstance(raw, dict):
        return None
    info = raw.get("info")
    if not isinstance(info, dict):
        return None
    try:
        return MatchInfoInput.model_validate(info)
    except ValidationError as e:
        logger.warning(f"Bloc info de match illisible: {e}")
        return None


def extract_match_fields(raw: Any) -> MatchFields:
    """Extrait début (ms), durée (s), file et plateforme d'un payload match.

    Args:
        raw: JSON brut de match-v5.

    Returns:
        MatchFields (valeurs None si absentes ou mal typées).
    """
    info = parse_match_info(raw)
    if info is None:
        return MatchFields()
    return MatchFields(
        game_start_ms=info.game_start_timestamp,
        game_duration_s=info.game_duration,
        queue_id=info.queue_id,
        platform=info.platform_id,
    )


def extract_team_results(raw: Any) -> dict[int, bool]:
    """Résultat par équipe depuis info.teams ({team_id: win})."""
    info = parse_match_info(raw)
    if info is None:
        return {}
    out: dict[int, bool] = {}
    for item in info.teams:
        if not isinstance(item, dict):
            continue
        team = TeamInput.model_validate(item)
        if team.team_id is not None and team.win is not None:
            out[team.team_id] = team.win
    return out


def extract_participants(match_id: str, raw: Any) -> list[MatchParticipantRow]:
    """Projette les participants d'un payload en lignes match_participants.

    Les participants sans puuid sont ignorés, les doublons aussi (premier gardé).

    Args:
        match_id: ID du match.
        raw: JSON brut de match-v5.

    Returns:
        Liste de MatchParticipantRow.
    """
    info = parse_match_info(raw)
    if info is None:
        return []

    team_results = extract_team_results(raw)
    rows: list[MatchParticipantRow] = []
    seen: set[str] = set()

    for item in info.participants:
        if not isinstance(item, dict):
            continue
        p = ParticipantInput.model_validate(item)
        if not p.puuid or p.puuid in seen:
            continue
        seen.add(p.puuid)

        rows.append(
            MatchParticipantRow(
                match_id=match_id,
                puuid=p.puuid,
                team_id=p.team_id,
                win=p.win,
                team_win=team_results.get(p.team_id) if p.team_id is not None else None,
                summoner_name=p.summoner_name,
                riot_id_game_name=p.riot_id_game_name,
                riot_id_tagline=p.riot_id_tagline,
                champion_name=p.champion_name,
                lane=p.lane,
                role=p.role,
                kills=p.kills,
                deaths=p.deaths,
                assists=p.assists,
                gold_earned=p.gold_earned,
                total_damage_dealt_to_champions=p.total_damage_dealt_to_champions,
                vision_score=p.vision_score,
                total_minions_killed=p.total_minions_killed,
                neutral_minions_killed=p.neutral_minions_killed,
            )
        )

    return rows


def parse_rank_entries(payload: Any) -> list[RankEntry]:
    """Valide une réponse league-v4 (liste attendue, sinon vide)."""
    if not isinstance(payload, list):
        return []
    entries: list[RankEntry] = []
    for item in payload:
        if isinstance(item, dict):
            entries.append(RankEntry.model_validate(item))
    return entries


def pick_rank(entries: list[RankEntry], queue: RankedQueue | str) -> RankInfo:
    """Retourne le rang d'une file, RankInfo vide si le joueur n'y est pas classé."""
    for entry in entries:
        if entry.queue_type == queue:
            return entry.to_rank_info()
    return RankInfo()
