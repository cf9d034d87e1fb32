"""Tests du client API Riot (transport, retry, espacement des appels).

La session aiohttp est remplacée par FakeSession : aucune requête réseau.
"""

from __future__ import annotations

import asyncio
import json

import aiohttp
import pytest

from src.config import SyncSettings
from src.data.sync import api_client
from src.data.sync.api_client import (
    MissingAPIKeyError,
    RequestContext,
    RequestGate,
    RetryPolicy,
    RiotAPIClient,
    RiotAPIError,
)

# =============================================================================
# Helpers
# =============================================================================


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class InFlightSession:
    """Session dont chaque réponse rend la main à la boucle pendant l'appel.

    Compte les appels simultanés et note l'instant de départ de chacun.
    """

    def __init__(self, clock, count: int) -> None:
        self._clock = clock
        self._remaining = count
        self.in_flight = 0
        self.max_in_flight = 0
        self.starts: list[float] = []

    def get(self, url: str, *, params=None, headers=None):
        if self._remaining <= 0:
            raise AssertionError(f"Requête inattendue: {url}")
        self._remaining -= 1
        return _InFlightResponse(self)


class _InFlightResponse:
    status = 200
    headers: dict[str, str] = {}

    def __init__(self, session: InFlightSession) -> None:
        self._session = session

    async def __aenter__(self) -> _InFlightResponse:
        s = self._session
        s.in_flight += 1
        s.max_in_flight = max(s.max_in_flight, s.in_flight)
        s.starts.append(s._clock())
        await asyncio.sleep(0)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await asyncio.sleep(0)
        self._session.in_flight -= 1

    async def text(self) -> str:
        await asyncio.sleep(0)
        return '["A"]'


def make_client(session, sleep: SleepRecorder, **kwargs) -> RiotAPIClient:
    return RiotAPIClient(
        "RGAPI-test",
        gate=RequestGate(0),
        retry=RetryPolicy(rng=lambda: 0.0),
        session=session,
        sleep=sleep,
        **kwargs,
    )


# =============================================================================
# RetryPolicy
# =============================================================================


class TestRetryPolicy:
    def test_attempt_budgets(self):
        policy = RetryPolicy()
        assert policy.max_attempts_for(429) == 5
        assert policy.max_attempts_for(503) == 3
        assert policy.max_attempts_for(0) == 3
        assert policy.max_attempts_for(404) == 1

    def test_exponential_backoff_without_retry_after(self):
        policy = RetryPolicy(rng=lambda: 0.0)
        assert policy.delay_for(429, 1) == pytest.approx(1.0)
        assert policy.delay_for(429, 2) == pytest.approx(2.0)
        assert policy.delay_for(429, 3) == pytest.approx(4.0)
        assert policy.delay_for(500, 1) == pytest.approx(0.5)

    def test_retry_after_header_wins_on_429(self):
        policy = RetryPolicy(rng=lambda: 0.0)
        assert policy.delay_for(429, 1, "7") == pytest.approx(7.0)
        # Ignoré hors 429
        assert policy.delay_for(503, 1, "7") == pytest.approx(0.5)

    def test_jitter_and_cap(self):
        policy = RetryPolicy(rng=lambda: 1.0, max_delay_s=3.0)
        assert policy.delay_for(429, 1) == pytest.approx(1.25)
        assert policy.delay_for(429, 1, "60") == pytest.approx(3.0)

    def test_invalid_retry_after_falls_back_to_backoff(self):
        policy = RetryPolicy(rng=lambda: 0.0)
        assert policy.delay_for(429, 2, "bientôt") == pytest.approx(2.0)


# =============================================================================
# RequestGate
# =============================================================================


class TestRequestGate:
    @pytest.mark.asyncio
    async def test_consecutive_calls_are_spaced(self):
        now = [100.0]
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            now[0] += seconds

        gate = RequestGate(130, clock=lambda: now[0], sleep=fake_sleep)

        async with gate.slot():
            pass
        now[0] += 0.030
        async with gate.slot():
            pass

        assert sleeps == [pytest.approx(0.100)]

    @pytest.mark.asyncio
    async def test_no_wait_when_interval_elapsed(self):
        now = [100.0]
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        gate = RequestGate(130, clock=lambda: now[0], sleep=fake_sleep)
        async with gate.slot():
            pass
        now[0] += 1.0
        async with gate.slot():
            pass

        assert sleeps == []
        assert gate.last_call_at == pytest.approx(101.0)

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_overlap(self):
        now = [100.0]

        async def fake_sleep(seconds: float) -> None:
            now[0] += seconds
            await asyncio.sleep(0)

        session = InFlightSession(lambda: now[0], count=5)
        client = RiotAPIClient(
            "RGAPI-test",
            gate=RequestGate(130, clock=lambda: now[0], sleep=fake_sleep),
            retry=RetryPolicy(rng=lambda: 0.0),
            session=session,
            sleep=SleepRecorder(),
        )

        results = await asyncio.gather(*(client.list_match_ids(f"puuid-{i}") for i in range(5)))

        assert results == [["A"]] * 5
        assert session.max_in_flight == 1
        assert len(session.starts) == 5
        gaps = [b - a for a, b in zip(session.starts, session.starts[1:])]
        assert all(gap >= 0.130 - 1e-9 for gap in gaps)


# =============================================================================
# RiotAPIClient
# =============================================================================


class TestRiotAPIClientConstruction:
    def test_missing_key_is_configuration_error(self):
        with pytest.raises(MissingAPIKeyError):
            RiotAPIClient(None)
        with pytest.raises(MissingAPIKeyError):
            RiotAPIClient("   ")

    @pytest.fixture
    def fresh_default_gate(self, monkeypatch):
        monkeypatch.setattr(api_client, "_default_gate", None)

    def test_from_settings_uses_routing(self):
        settings = SyncSettings(riot_api_key="RGAPI-x", riot_region="KR", riot_routing="asia")
        client = RiotAPIClient.from_settings(settings, gate=RequestGate(0))
        assert client.region == "kr"
        assert client.routing == "asia"

    def test_from_settings_shares_process_gate(self, fresh_default_gate):
        settings = SyncSettings(riot_api_key="RGAPI-x", min_delay_ms=200)

        first = RiotAPIClient.from_settings(settings)
        second = RiotAPIClient.from_settings(settings)

        assert first._gate is second._gate
        assert first._gate is api_client.get_default_gate()
        assert first._gate.min_interval_ms == 200

    def test_settings_delay_applies_to_existing_gate(self, fresh_default_gate, monkeypatch):
        monkeypatch.setenv("RIOT_MIN_DELAY_MS", "500")
        plain = RiotAPIClient("RGAPI-x")
        assert plain._gate.min_interval_ms == 500

        tuned = RiotAPIClient.from_settings(SyncSettings(riot_api_key="RGAPI-x", min_delay_ms=50))

        assert tuned._gate is plain._gate
        assert plain._gate.min_interval_ms == 50


class TestRiotAPIClientRetry:
    @pytest.mark.asyncio
    async def test_429_retries_then_raises_after_five_attempts(
        self, fake_session_factory, response_factory
    ):
        session = fake_session_factory([response_factory(429, "rate") for _ in range(5)])
        sleep = SleepRecorder()
        client = make_client(session, sleep)

        with pytest.raises(RiotAPIError) as exc:
            await client.get_match_detail("EUW1_1")

        assert exc.value.status == 429
        assert exc.value.is_rate_limited
        assert len(session.requests) == 5
        assert sleep.delays == [pytest.approx(d) for d in (1.0, 2.0, 4.0, 8.0)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["Retry-After", "retry-after", "RETRY-AFTER"])
    async def test_429_honours_retry_after(self, fake_session_factory, response_factory, header):
        session = fake_session_factory(
            [
                response_factory(429, "", {header: "3"}),
                response_factory(200, json.dumps({"metadata": {}, "info": {}})),
            ]
        )
        sleep = SleepRecorder()
        client = make_client(session, sleep)

        payload = await client.get_match_detail("EUW1_1")

        assert payload == {"metadata": {}, "info": {}}
        assert sleep.delays == [pytest.approx(3.0)]
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_server_error_retried_three_times(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(503, "down") for _ in range(3)])
        sleep = SleepRecorder()
        client = make_client(session, sleep)

        with pytest.raises(RiotAPIError) as exc:
            await client.get_match_detail("EUW1_1")

        assert exc.value.status == 503
        assert len(session.requests) == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(500), response_factory(200, '["A", "B"]')])
        client = make_client(session, SleepRecorder())

        assert await client.list_match_ids("puuid-1") == ["A", "B"]

    @pytest.mark.asyncio
    async def test_client_error_raised_immediately(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(404, "Data not found")])
        sleep = SleepRecorder()
        client = make_client(session, sleep)

        with pytest.raises(RiotAPIError) as exc:
            await client.resolve_account("Nobody", "EUW")

        assert exc.value.is_not_found
        assert len(session.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_network_error_uses_server_budget(self, fake_session_factory, response_factory):
        session = fake_session_factory(
            [aiohttp.ClientConnectionError("reset"), response_factory(200, "[]")]
        )
        sleep = SleepRecorder()
        client = make_client(session, sleep)

        assert await client.list_match_ids("puuid-1") == []
        assert sleep.delays == [pytest.approx(0.5)]

    @pytest.mark.asyncio
    async def test_network_error_exhausted_becomes_status_zero(self, fake_session_factory):
        session = fake_session_factory([aiohttp.ClientConnectionError("reset") for _ in range(3)])
        client = make_client(session, SleepRecorder())

        with pytest.raises(RiotAPIError) as exc:
            await client.list_match_ids("puuid-1")
        assert exc.value.status == 0


class TestRiotAPIClientEndpoints:
    @pytest.mark.asyncio
    async def test_list_match_ids_params(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(200, '["EUW1_3", 42, "EUW1_2"]')])
        client = make_client(session, SleepRecorder())

        ids = await client.list_match_ids(
            "puuid-1",
            start=200,
            count=500,
            start_time=1_700_000_000,
            end_time=1_710_000_000,
            context=RequestContext("match/ids", "f1"),
        )

        assert ids == ["EUW1_3", "EUW1_2"]
        request = session.requests[0]
        assert request["url"] == (
            "https://europe.api.riotgames.com/lol/match/v5/matches/by-puuid/puuid-1/ids"
        )
        assert request["params"] == {
            "start": 200,
            "count": 100,
            "startTime": 1_700_000_000,
            "endTime": 1_710_000_000,
        }
        assert request["headers"] == {"X-Riot-Token": "RGAPI-test"}

    @pytest.mark.asyncio
    async def test_list_match_ids_non_list_is_empty(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(200, '{"status": "weird"}')])
        client = make_client(session, SleepRecorder())
        assert await client.list_match_ids("puuid-1") == []

    @pytest.mark.asyncio
    async def test_resolve_account_escapes_riot_id(self, fake_session_factory, response_factory):
        body = json.dumps({"puuid": "P-1", "gameName": "Le Chat", "tagLine": "EUW"})
        session = fake_session_factory([response_factory(200, body)])
        client = make_client(session, SleepRecorder())

        account = await client.resolve_account("Le Chat", "EUW")

        assert account.puuid == "P-1"
        assert session.requests[0]["url"].endswith("/by-riot-id/Le%20Chat/EUW")

    @pytest.mark.asyncio
    async def test_resolve_rank_ref_requires_id(self, fake_session_factory, response_factory):
        session = fake_session_factory([response_factory(200, json.dumps({"puuid": "P-1"}))])
        client = make_client(session, SleepRecorder())

        with pytest.raises(RiotAPIError):
            await client.resolve_rank_ref("P-1")
        assert session.requests[0]["url"].startswith("https://euw1.api.riotgames.com/")

    @pytest.mark.asyncio
    async def test_rank_entries_validated(self, fake_session_factory, response_factory):
        body = json.dumps(
            [
                {
                    "queueType": "RANKED_SOLO_5x5",
                    "tier": "GOLD",
                    "rank": "II",
                    "leaguePoints": 45,
                    "wins": 10,
                    "losses": 8,
                    "hotStreak": False,
                },
                "garbage",
            ]
        )
        session = fake_session_factory([response_factory(200, body)])
        client = make_client(session, SleepRecorder())

        entries = await client.get_rank_entries("S-1")

        assert len(entries) == 1
        info = entries[0].to_rank_info()
        assert (info.tier, info.division, info.lp) == ("GOLD", "II", 45)

    @pytest.mark.asyncio
    async def test_owned_session_closed_on_exit(self):
        client = RiotAPIClient("RGAPI-test", gate=RequestGate(0))
        async with client:
            session = client.session
            assert not session.closed
        assert session.closed
