"""Fixtures communes pour les tests.

Ce fichier contient :
- une base DuckDB en mémoire (DuckDBSyncRepository)
- des horloges contrôlables (UTC et monotone)
- un faux client Riot en mémoire (FakeRiotClient)
- une fausse session aiohttp pour tester le transport du vrai client
- un constructeur de payloads match-v5
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.config import SyncSettings
from src.data.repositories.duckdb_repo import DuckDBSyncRepository
from src.data.sync.api_client import RiotAPIError
from src.data.sync.transformers import AccountInfo, RankEntry, parse_rank_entries


def pytest_configure(config: pytest.Config) -> None:
    """Configuration globale pytest.

    Sur Windows, DuckDB peut crasher de manière non déterministe (access violation)
    pendant des suites de tests longues. On force un mode mono-thread au moment de
    la connexion pour réduire ces crashes.
    """

    if not sys.platform.startswith("win"):
        return

    import duckdb

    original_connect = duckdb.connect

    def connect_patched(database=":memory:", read_only: bool = False, config=None, **kwargs):
        merged = {}
        if isinstance(config, dict):
            merged.update(config)
        merged.setdefault("threads", "1")

        conn = original_connect(database, read_only=read_only, config=merged, **kwargs)
        with suppress(Exception):
            conn.execute("SET threads=1")
        return conn

    duckdb.connect = connect_patched


# =============================================================================
# Horloges
# =============================================================================


class FakeClock:
    """Horloge UTC avançable à la main."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Horloge monotone (secondes) avançable à la main."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


# =============================================================================
# Faux client Riot
# =============================================================================


class FakeRiotClient:
    """Client Riot en mémoire, même interface que RiotAPIClient.

    Attributes:
        accounts: (nom, tag) → puuid.
        summoners: puuid → summoner id.
        entries: summoner id → payload league-v4 brut.
        histories: puuid → IDs de match (plus récent d'abord).
        matches: match id → payload match-v5.
        failures: nom de méthode → exception levée à chaque appel.
        calls: journal des appels (nom de méthode, argument principal).
    """

    def __init__(self) -> None:
        self.accounts: dict[tuple[str, str], str] = {}
        self.summoners: dict[str, str] = {}
        self.entries: dict[str, list[dict[str, Any]]] = {}
        self.histories: dict[str, list[str]] = {}
        self.matches: dict[str, dict[str, Any]] = {}
        self.timelines: dict[str, dict[str, Any]] = {}
        self.failures: dict[str, Exception] = {}
        self.on_call: Callable[[str], None] | None = None
        self.calls: list[tuple[str, Any]] = []

    def _record(self, method: str, arg: Any) -> None:
        self.calls.append((method, arg))
        if self.on_call is not None:
            self.on_call(method)
        if method in self.failures:
            raise self.failures[method]

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    async def resolve_account(self, game_name: str, tag_line: str, *, context=None) -> AccountInfo:
        self._record("resolve_account", (game_name, tag_line))
        puuid = self.accounts.get((game_name, tag_line))
        if puuid is None:
            raise RiotAPIError(404, "Data not found", "account")
        return AccountInfo(puuid=puuid, game_name=game_name, tag_line=tag_line)

    async def list_match_ids(
        self,
        puuid: str,
        *,
        start: int = 0,
        count: int = 20,
        start_time: int | None = None,
        end_time: int | None = None,
        context=None,
    ) -> list[str]:
        self._record("list_match_ids", {"puuid": puuid, "start": start, "count": count})
        history = self.histories.get(puuid, [])
        return list(history[start : start + count])

    async def get_match_detail(self, match_id: str, *, context=None) -> dict[str, Any]:
        self._record("get_match_detail", match_id)
        if match_id not in self.matches:
            raise RiotAPIError(404, "Match not found", match_id)
        return self.matches[match_id]

    async def get_match_timeline(self, match_id: str, *, context=None) -> dict[str, Any]:
        self._record("get_match_timeline", match_id)
        return self.timelines.get(match_id, {"info": {"frames": []}})

    async def resolve_rank_ref(self, puuid: str, *, context=None) -> str:
        self._record("resolve_rank_ref", puuid)
        sid = self.summoners.get(puuid)
        if sid is None:
            raise RiotAPIError(200, "Impossible de résoudre le summonerId", "summoner")
        return sid

    async def get_rank_entries(self, summoner_id: str, *, context=None) -> list[RankEntry]:
        self._record("get_rank_entries", summoner_id)
        return parse_rank_entries(self.entries.get(summoner_id, []))

    async def get_platform_status(self, *, context=None) -> dict[str, Any]:
        self._record("get_platform_status", None)
        return {"id": "EUW1", "name": "EU West", "incidents": [], "maintenances": []}


# =============================================================================
# Fausse session aiohttp
# =============================================================================


class FakeResponse:
    """Réponse aiohttp minimale (contexte async, text())."""

    def __init__(self, status: int = 200, body: str = "", headers: dict[str, str] | None = None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def text(self) -> str:
        return self._body


class FakeSession:
    """Session aiohttp rejouant une file de réponses (ou d'exceptions)."""

    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    def get(self, url: str, *, params=None, headers=None):
        self.requests.append({"url": url, "params": params, "headers": headers})
        if not self._responses:
            raise AssertionError(f"Requête inattendue: {url}")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Payloads
# =============================================================================


def build_match_payload(
    match_id: str,
    *,
    start_ms: int = 1_717_243_200_000,
    duration_s: int = 1_800,
    queue_id: int = 420,
    participants: list[tuple[str, int, bool | None]] | None = None,
    team_wins: dict[int, bool | None] | None = None,
) -> dict[str, Any]:
    """Construit un payload match-v5.

    Args:
        participants: (puuid, team_id, win). Par défaut 10 joueurs p0..p9,
            l'équipe 100 gagne.
        team_wins: Résultat par équipe (par défaut déduit des participants).
    """
    if participants is None:
        participants = [(f"{match_id}-p{i}", 100 if i < 5 else 200, i < 5) for i in range(10)]
    if team_wins is None:
        team_wins = {}
        for _, team_id, win in participants:
            team_wins.setdefault(team_id, win)

    return {
        "metadata": {"matchId": match_id, "participants": [p[0] for p in participants]},
        "info": {
            "gameStartTimestamp": start_ms,
            "gameDuration": duration_s,
            "queueId": queue_id,
            "platformId": "EUW1",
            "participants": [
                {
                    "puuid": puuid,
                    "teamId": team_id,
                    "win": win,
                    "championName": "Ahri",
                    "kills": 5,
                    "deaths": 3,
                    "assists": 7,
                }
                for puuid, team_id, win in participants
            ],
            "teams": [
                {"teamId": team_id, "win": win}
                for team_id, win in team_wins.items()
                if win is not None
            ],
        },
    }


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def repo():
    """Repository DuckDB en mémoire (schéma créé)."""
    r = DuckDBSyncRepository(":memory:")
    yield r
    r.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def fake_client() -> FakeRiotClient:
    return FakeRiotClient()


@pytest.fixture
def settings() -> SyncSettings:
    """Réglages de test (clé factice, pas de délai)."""
    return SyncSettings(riot_api_key="RGAPI-test", min_delay_ms=0)


@pytest.fixture
def match_payload() -> Callable[..., dict[str, Any]]:
    return build_match_payload


@pytest.fixture
def fake_session_factory() -> Callable[[list[FakeResponse | Exception]], FakeSession]:
    return FakeSession


@pytest.fixture
def response_factory() -> Callable[..., FakeResponse]:
    return FakeResponse
