"""Données de référence League of Legends (files de jeu, rangs).

Ce module fournit :
- QueueId : identifiants des files de jeu courantes
- RankedQueue : clés des files classées suivies (solo/duo et flex)
- TIER_ORDER / DIV_ORDER : ordre des paliers et divisions
- Helpers d'affichage et de tri (queue_label, format_rank, rank_score, winrate)
"""

from __future__ import annotations

from enum import IntEnum, StrEnum
from typing import Final


class QueueId(IntEnum):
    """Identifiants des files de jeu les plus courantes."""

    NORMAL_DRAFT = 400
    RANKED_SOLO_DUO = 420
    NORMAL_BLIND = 430
    RANKED_FLEX = 440
    ARAM = 450
    QUICKPLAY = 490
    CLASH = 700
    ARENA = 1700


class RankedQueue(StrEnum):
    """Files classées dont le rang est mis en cache et historisé."""

    SOLO = "RANKED_SOLO_5x5"
    FLEX = "RANKED_FLEX_SR"


TRACKED_RANKED_QUEUES: Final[tuple[RankedQueue, ...]] = (RankedQueue.SOLO, RankedQueue.FLEX)

QUEUE_LABELS: Final[dict[int, str]] = {
    QueueId.RANKED_SOLO_DUO: "Ranked Solo/Duo",
    QueueId.RANKED_FLEX: "Ranked Flex",
    QueueId.ARAM: "ARAM",
    QueueId.NORMAL_DRAFT: "Normal Draft",
    QueueId.NORMAL_BLIND: "Normal Blind",
    QueueId.QUICKPLAY: "Quickplay",
    QueueId.CLASH: "Clash",
    QueueId.ARENA: "Arena",
}

# Tri : palier > division > LP
TIER_ORDER: Final[dict[str, int]] = {
    "IRON": 1,
    "BRONZE": 2,
    "SILVER": 3,
    "GOLD": 4,
    "PLATINUM": 5,
    "EMERALD": 6,
    "DIAMOND": 7,
    "MASTER": 8,
    "GRANDMASTER": 9,
    "CHALLENGER": 10,
}

DIV_ORDER: Final[dict[str, int]] = {
    "IV": 1,
    "III": 2,
    "II": 3,
    "I": 4,
}

# Paliers sans division
APEX_TIERS: Final[frozenset[str]] = frozenset({"MASTER", "GRANDMASTER", "CHALLENGER"})

UNRANKED_SCORE: Final[int] = -1


def queue_label(queue_id: int | None) -> str:
    """Retourne le libellé d'une file de jeu."""
    if queue_id is None:
        return "Unknown"
    return QUEUE_LABELS.get(queue_id, f"Queue {queue_id}")


def is_ranked_queue(queue_id: int | None) -> bool:
    return queue_id in (QueueId.RANKED_SOLO_DUO, QueueId.RANKED_FLEX)


def _norm(value: str | None) -> str:
    return (value or "").strip().upper()


def rank_score(tier: str | None, div: str | None = None, lp: int | None = None) -> int:
    """Score comparable d'un rang (plus haut = meilleur).

    Le palier domine, puis la division, puis les LP. Les paliers apex n'ont
    pas de division et comptent comme la division maximale.

    Args:
        tier: Palier (ex: "GOLD").
        div: Division (ex: "II").
        lp: League points.

    Returns:
        Score entier, -1 si non classé.
    """
    t = _norm(tier)
    tier_n = TIER_ORDER.get(t, 0)
    if tier_n <= 0:
        return UNRANKED_SCORE

    div_n = DIV_ORDER["I"] if t in APEX_TIERS else DIV_ORDER.get(_norm(div), 0)
    lp_n = lp if isinstance(lp, int) else 0
    return tier_n * 1_000_000 + div_n * 10_000 + lp_n


def best_rank_score(
    solo_tier: str | None = None,
    solo_div: str | None = None,
    solo_lp: int | None = None,
    flex_tier: str | None = None,
    flex_div: str | None = None,
    flex_lp: int | None = None,
) -> int:
    """Meilleur score entre solo/duo et flex."""
    return max(rank_score(solo_tier, solo_div, solo_lp), rank_score(flex_tier, flex_div, flex_lp))


def format_rank(tier: str | None, div: str | None = None, lp: int | None = None) -> str:
    """Formate un rang pour l'affichage (ex: "GOLD II · 45 LP")."""
    if not tier:
        return "Unranked"
    d = f" {div}" if div else ""
    p = f" · {lp} LP" if lp is not None else ""
    return f"{tier}{d}{p}"


def winrate(wins: int | None, losses: int | None) -> int | None:
    """Pourcentage de victoires arrondi, None sans partie jouée."""
    w = wins or 0
    total = w + (losses or 0)
    if total <= 0:
        return None
    return round(w / total * 100)
