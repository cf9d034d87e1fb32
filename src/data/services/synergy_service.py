"""Service Synergies: taux de victoire des paires d'amis dans la même équipe.

Une paire joue ensemble quand les deux amis apparaissent dans le même
match avec le même team_id. Seuls les N matchs complets les plus récents
sont considérés.

Règle de victoire d'une partie commune :
1. le résultat d'équipe (teams[].win du payload) s'il est connu ;
2. sinon les flags win des deux participants, seulement s'ils concordent ;
3. sinon la partie est comptée mais reste indécise (hors winrate).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from src.config import clamp_int
from src.data.domain.refdata import winrate
from src.data.repositories.protocol import SyncRepository
from src.data.sync.models import MatchParticipantRow

DEFAULT_TAKE_MATCHES = 400
MIN_TAKE_MATCHES = 50
MAX_TAKE_MATCHES = 2_000
MAX_PAIRS = 60


# ─── Dataclasses retour ────────────────────────────────────────────────


@dataclass(frozen=True)
class SynergyPair:
    """Statistiques d'une paire d'amis (a < b par PUUID)."""

    a_puuid: str
    b_puuid: str
    a: str
    """Riot ID de a (ou PUUID si inconnu)."""
    b: str
    games: int
    wins: int
    undecided: int
    """Parties communes sans résultat fiable."""

    @property
    def winrate(self) -> int | None:
        """Pourcentage arrondi sur les parties décidées (None si aucune)."""
        return winrate(self.wins, self.games - self.undecided - self.wins)

    def to_dict(self) -> dict[str, object]:
        return {
            "a_puuid": self.a_puuid,
            "b_puuid": self.b_puuid,
            "a": self.a,
            "b": self.b,
            "games": self.games,
            "wins": self.wins,
            "undecided": self.undecided,
            "winrate": self.winrate,
        }


@dataclass(frozen=True)
class SynergyReport:
    """Paires triées par nombre de parties communes."""

    pairs: list[SynergyPair]
    sample_matches: int
    """Matchs contenant au moins un ami dans l'échantillon."""


# ─── Calcul ────────────────────────────────────────────────────────────


def shared_game_result(a: MatchParticipantRow, b: MatchParticipantRow) -> bool | None:
    """Résultat d'une partie jouée ensemble (None si indécidable)."""
    for p in (a, b):
        if p.team_win is not None:
            return p.team_win
    if a.win is not None and a.win == b.win:
        return a.win
    return None


def compute_synergy_pairs(
    repo: SyncRepository,
    take_matches: int = DEFAULT_TAKE_MATCHES,
    *,
    max_pairs: int = MAX_PAIRS,
) -> SynergyReport:
    """Calcule les paires d'amis ayant joué dans la même équipe.

    Args:
        repo: Repository (lecture seule).
        take_matches: Nombre de matchs récents à considérer (borné 50–2000).
        max_pairs: Nombre maximum de paires retournées.

    Returns:
        SynergyReport.
    """
    take = clamp_int(take_matches, DEFAULT_TAKE_MATCHES, MIN_TAKE_MATCHES, MAX_TAKE_MATCHES)

    names = {f.puuid: f.riot_id for f in repo.list_friends() if f.puuid}
    if len(names) < 2:
        return SynergyReport(pairs=[], sample_matches=0)

    by_match: dict[str, list[MatchParticipantRow]] = defaultdict(list)
    for row in repo.list_friend_participants(take):
        by_match[row.match_id].append(row)

    games: dict[tuple[str, str], list[int]] = defaultdict(lambda: [0, 0, 0])
    for rows in by_match.values():
        for i, a in enumerate(rows):
            for b in rows[i + 1 :]:
                if a.team_id is None or a.team_id != b.team_id:
                    continue
                key = (a.puuid, b.puuid) if a.puuid < b.puuid else (b.puuid, a.puuid)
                stats = games[key]
                stats[0] += 1
                result = shared_game_result(a, b)
                if result is None:
                    stats[2] += 1
                elif result:
                    stats[1] += 1

    pairs = [
        SynergyPair(
            a_puuid=pa,
            b_puuid=pb,
            a=names.get(pa, pa),
            b=names.get(pb, pb),
            games=n,
            wins=w,
            undecided=u,
        )
        for (pa, pb), (n, w, u) in games.items()
    ]
    pairs.sort(key=lambda p: (-p.games, p.a, p.b))
    return SynergyReport(pairs=pairs[: max(0, max_pairs)], sample_matches=len(by_match))
