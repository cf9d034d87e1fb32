"""Client API Riot asynchrone.

Ce module encapsule les appels HTTP à l'API Riot avec :
- Sérialisation des appels (un seul appel en vol par RequestGate)
- Délai minimum entre deux appels (RIOT_MIN_DELAY_MS)
- Retry borné et explicite (RetryPolicy) sur 429, 5xx et erreurs réseau
- Validation des payloads à la frontière (voir transformers)

Usage:
    async with RiotAPIClient.from_settings(SyncSettings.from_env()) as client:
        account = await client.resolve_account("Faker", "KR1")
        ids = await client.list_match_ids(account.puuid, count=20)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from src.config import SyncSettings, clamp_int
from src.data.sync.transformers import (
    AccountInfo,
    RankEntry,
    SummonerInfo,
    parse_rank_entries,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_MIN_DELAY_MS = 130
DEFAULT_TIMEOUT_S = 45


# =============================================================================
# Erreurs
# =============================================================================


class RiotAPIError(Exception):
    """Réponse non-2xx (ou erreur réseau, status=0) de l'API Riot."""

    def __init__(self, status: int, body: str = "", url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        snippet = body[:300] if body else ""
        super().__init__(f"Riot API error {status} - {url} - {snippet}".rstrip(" -"))

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class MissingAPIKeyError(ValueError):
    """RIOT_API_KEY absente : erreur de configuration, jamais retentée."""


@dataclass(frozen=True)
class RequestContext:
    """Contexte d'un appel, utilisé uniquement pour les logs."""

    label: str | None = None
    friend_id: str | None = None

    def describe(self) -> str:
        parts = []
        if self.label:
            parts.append(f"label={self.label}")
        if self.friend_id:
            parts.append(f"friendId={self.friend_id}")
        return " ".join(parts)


@dataclass
class RawResponse:
    """Réponse HTTP brute (status, corps texte, headers)."""

    status: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


# =============================================================================
# RequestGate (sérialisation + délai minimum)
# =============================================================================


class RequestGate:
    """Point de passage unique des appels HTTP.

    Un seul appel est en vol à la fois et deux appels consécutifs démarrent
    au moins `min_interval_ms` l'un après l'autre. L'horloge et la fonction
    de sommeil sont injectables pour les tests.
    """

    def __init__(
        self,
        min_interval_ms: int = DEFAULT_MIN_DELAY_MS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.min_interval_ms = max(0, int(min_interval_ms))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call_at: float | None = None

    @property
    def last_call_at(self) -> float | None:
        return self._last_call_at

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Réserve le créneau d'appel (attend le délai minimum si nécessaire)."""
        async with self._lock:
            if self._last_call_at is not None and self.min_interval_ms > 0:
                elapsed_ms = (self._clock() - self._last_call_at) * 1000
                wait_ms = self.min_interval_ms - elapsed_ms
                if wait_ms > 0:
                    await self._sleep(wait_ms / 1000)
            self._last_call_at = self._clock()
            yield


_default_gate: RequestGate | None = None


def get_default_gate(min_delay_ms: int | None = None) -> RequestGate:
    """Retourne la RequestGate partagée du process (créée au premier appel).

    Tous les clients du process passent par cette gate. Un délai explicite
    (ex: SyncSettings.min_delay_ms) remplace celui lu dans RIOT_MIN_DELAY_MS.
    """
    global _default_gate
    if _default_gate is None:
        if min_delay_ms is None:
            min_delay_ms = clamp_int(
                os.environ.get("RIOT_MIN_DELAY_MS"), DEFAULT_MIN_DELAY_MS, 0, 5_000
            )
        _default_gate = RequestGate(min_delay_ms)
    elif min_delay_ms is not None:
        _default_gate.min_interval_ms = max(0, int(min_delay_ms))
    return _default_gate


# =============================================================================
# RetryPolicy
# =============================================================================


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


@dataclass(frozen=True)
class RetryPolicy:
    """Stratégie de retry (boucle bornée côté client, pas de récursion).

    Attributes:
        rate_limit_attempts: Tentatives max sur 429.
        server_error_attempts: Tentatives max sur 5xx / erreur réseau.
        rate_limit_base_s: Base du backoff exponentiel sur 429 (sans Retry-After).
        server_error_base_s: Base du backoff sur 5xx.
        max_jitter_s: Jitter aléatoire ajouté à chaque attente.
        max_delay_s: Plafond d'une attente.
        rng: Source aléatoire dans [0, 1).
    """

    rate_limit_attempts: int = 5
    server_error_attempts: int = 3
    rate_limit_base_s: float = 1.0
    server_error_base_s: float = 0.5
    max_jitter_s: float = 0.25
    max_delay_s: float = 20.0
    rng: Callable[[], float] = random.random

    def max_attempts_for(self, status: int) -> int:
        if status == 429:
            return self.rate_limit_attempts
        if status == 0 or status >= 500:
            return self.server_error_attempts
        return 1

    def should_retry(self, status: int, attempt: int) -> bool:
        """True si une nouvelle tentative est permise après l'échec n° `attempt`."""
        return attempt < self.max_attempts_for(status)

    def delay_for(self, status: int, attempt: int, retry_after: str | None = None) -> float:
        """Délai (secondes) avant la tentative suivante."""
        base = self.rate_limit_base_s if status == 429 else self.server_error_base_s
        hinted = _parse_retry_after(retry_after) if status == 429 else None
        delay = hinted if hinted is not None else base * (2 ** (attempt - 1))
        delay += self.rng() * self.max_jitter_s
        return min(delay, self.max_delay_s)


# =============================================================================
# RiotAPIClient
# =============================================================================


class RiotAPIClient:
    """Client API Riot asynchrone.

    Tous les appels passent par une RequestGate (partagée par défaut) et une
    RetryPolicy. La session aiohttp est créée à l'entrée du contexte sauf si
    elle est fournie.

    Usage:
        async with RiotAPIClient(api_key) as client:
            ids = await client.list_match_ids(puuid)
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        region: str = "euw1",
        routing: str = "europe",
        gate: RequestGate | None = None,
        retry: RetryPolicy | None = None,
        session: Any | None = None,
        sleep: SleepFn = asyncio.sleep,
        debug: bool = False,
    ) -> None:
        """
        Args:
            api_key: Clé Riot (X-Riot-Token).
            region: Routing plateforme (summoner, league, status).
            routing: Routing régional (account, match).
            gate: RequestGate (get_default_gate() si None).
            retry: RetryPolicy (défauts si None).
            session: Session HTTP pré-construite (non fermée par le client).
            sleep: Fonction de sommeil des backoffs.
            debug: Log de chaque appel (DEBUG_RIOT).

        Raises:
            MissingAPIKeyError: Si la clé est absente.
        """
        if not api_key or not api_key.strip():
            raise MissingAPIKeyError("RIOT_API_KEY manquante. Définir RIOT_API_KEY dans l'env ou .env.local")
        self._api_key = api_key.strip()
        self.region = region.lower()
        self.routing = routing.lower()
        self._gate = gate or get_default_gate()
        self._retry = retry or RetryPolicy()
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._debug = debug
        self.calls = 0

    @classmethod
    def from_settings(cls, settings: SyncSettings, **kwargs: Any) -> RiotAPIClient:
        """Construit le client depuis SyncSettings."""
        if "gate" not in kwargs:
            kwargs["gate"] = get_default_gate(settings.min_delay_ms)
        return cls(
            settings.riot_api_key,
            region=settings.riot_region,
            routing=settings.riot_routing,
            debug=settings.debug_riot,
            **kwargs,
        )

    async def __aenter__(self) -> RiotAPIClient:
        """Initialise la session HTTP si nécessaire."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=DEFAULT_TIMEOUT_S)
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Ferme la session si elle appartient au client."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> Any:
        if self._session is None:
            raise RuntimeError("Client non initialisé. Utiliser 'async with'.")
        return self._session

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _regional_url(self, path: str) -> str:
        return f"https://{self.routing}.api.riotgames.com{path}"

    def _platform_url(self, path: str) -> str:
        return f"https://{self.region}.api.riotgames.com{path}"

    async def _send(self, url: str, params: Mapping[str, Any] | None) -> RawResponse:
        async with self._gate.slot():
            self.calls += 1
            async with self.session.get(
                url, params=params, headers={"X-Riot-Token": self._api_key}
            ) as resp:
                body = await resp.text()
                return RawResponse(
                    status=resp.status,
                    body=body,
                    headers={k.lower(): v for k, v in resp.headers.items()},
                )

    async def request_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> Any:
        """Effectue un GET avec retry et retourne le JSON décodé.

        Args:
            url: URL complète.
            params: Query string.
            context: Contexte de log.

        Returns:
            JSON décodé (None si corps vide).

        Raises:
            RiotAPIError: Réponse non-2xx après épuisement des tentatives,
                ou corps non JSON.
        """
        ctx = context.describe() if context else ""
        attempt = 0

        while True:
            attempt += 1
            try:
                resp = await self._send(url, params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not self._retry.should_retry(0, attempt):
                    raise RiotAPIError(0, f"{type(e).__name__}: {e}", url) from e
                delay = self._retry.delay_for(0, attempt)
                logger.warning(
                    f"Erreur réseau Riot ({type(e).__name__}) {ctx} "
                    f"tentative {attempt}, retry dans {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            if self._debug:
                logger.info(f"[DEBUG_RIOT] {resp.status} {url} {ctx} attempt={attempt}")

            if resp.ok:
                if not resp.body:
                    return None
                try:
                    return json.loads(resp.body)
                except json.JSONDecodeError as e:
                    raise RiotAPIError(resp.status, resp.body, url) from e

            if not self._retry.should_retry(resp.status, attempt):
                logger.debug(f"Riot {resp.status} définitif {url} {ctx} (tentative {attempt})")
                raise RiotAPIError(resp.status, resp.body, url)

            delay = self._retry.delay_for(resp.status, attempt, resp.headers.get("retry-after"))
            logger.warning(
                f"Riot {resp.status} {ctx} tentative {attempt}, retry dans {delay:.2f}s"
            )
            await self._sleep(delay)

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def resolve_account(
        self,
        game_name: str,
        tag_line: str,
        *,
        context: RequestContext | None = None,
    ) -> AccountInfo:
        """Résout un Riot ID (nom#tag) en compte (account-v1)."""
        url = self._regional_url(
            f"/riot/account/v1/accounts/by-riot-id/{quote(game_name, safe='')}/{quote(tag_line, safe='')}"
        )
        payload = await self.request_json(url, context=context)
        try:
            return AccountInfo.model_validate(payload)
        except ValidationError as e:
            raise RiotAPIError(200, f"Compte invalide: {e}", url) from e

    async def list_match_ids(
        self,
        puuid: str,
        *,
        start: int = 0,
        count: int = 20,
        start_time: int | None = None,
        end_time: int | None = None,
        context: RequestContext | None = None,
    ) -> list[str]:
        """Liste les IDs de match d'un joueur (plus récent d'abord).

        Args:
            puuid: PUUID du joueur.
            start: Offset dans l'historique.
            count: Taille de page (max 100).
            start_time: Borne basse (secondes epoch).
            end_time: Borne haute (secondes epoch).
            context: Contexte de log.

        Returns:
            Liste d'IDs (vide = historique épuisé).
        """
        params: dict[str, Any] = {"start": max(0, int(start)), "count": max(1, min(int(count), 100))}
        if start_time is not None:
            params["startTime"] = int(start_time)
        if end_time is not None:
            params["endTime"] = int(end_time)

        url = self._regional_url(f"/lol/match/v5/matches/by-puuid/{quote(puuid, safe='')}/ids")
        payload = await self.request_json(url, params=params, context=context)
        if not isinstance(payload, list):
            return []
        return [mid for mid in payload if isinstance(mid, str)]

    async def get_match_detail(
        self, match_id: str, *, context: RequestContext | None = None
    ) -> dict[str, Any]:
        """Payload complet d'un match (match-v5)."""
        url = self._regional_url(f"/lol/match/v5/matches/{quote(match_id, safe='')}")
        payload = await self.request_json(url, context=context)
        return payload if isinstance(payload, dict) else {}

    async def get_match_timeline(
        self, match_id: str, *, context: RequestContext | None = None
    ) -> dict[str, Any]:
        """Timeline d'un match (payload lourd, optionnel)."""
        url = self._regional_url(f"/lol/match/v5/matches/{quote(match_id, safe='')}/timeline")
        payload = await self.request_json(url, context=context)
        return payload if isinstance(payload, dict) else {}

    async def resolve_rank_ref(self, puuid: str, *, context: RequestContext | None = None) -> str:
        """Résout l'identifiant d'invocateur nécessaire aux appels league-v4.

        Raises:
            RiotAPIError: Si la réponse ne contient pas d'identifiant.
        """
        url = self._platform_url(f"/lol/summoner/v4/summoners/by-puuid/{quote(puuid, safe='')}")
        payload = await self.request_json(url, context=context)
        summoner = SummonerInfo.model_validate(payload if isinstance(payload, dict) else {})
        if not summoner.id:
            raise RiotAPIError(200, "Impossible de résoudre le summonerId", url)
        return summoner.id

    async def get_rank_entries(
        self, summoner_id: str, *, context: RequestContext | None = None
    ) -> list[RankEntry]:
        """Entrées classées d'un invocateur (league-v4)."""
        url = self._platform_url(f"/lol/league/v4/entries/by-summoner/{quote(summoner_id, safe='')}")
        payload = await self.request_json(url, context=context)
        entries = parse_rank_entries(payload)
        if self._debug and not entries:
            logger.info(f"[DEBUG_RIOT] league/entries vide pour summonerId={summoner_id}")
        return entries

    async def get_platform_status(self, *, context: RequestContext | None = None) -> dict[str, Any]:
        """Statut de la plateforme (status-v4), utilisé comme health check."""
        url = self._platform_url("/lol/status/v4/platform-data")
        payload = await self.request_json(url, context=context)
        return payload if isinstance(payload, dict) else {}
