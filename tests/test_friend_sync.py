"""Tests des étapes de synchronisation par ami (FriendSync)."""

from __future__ import annotations

import dataclasses

import pytest

from src.data.sync.api_client import RiotAPIError
from src.data.sync.friend_sync import FriendNotFoundError, FriendSync
from src.data.sync.models import TimeBudget
from src.data.sync.transformers import extract_match_fields, extract_participants

SOLO_GOLD = {
    "queueType": "RANKED_SOLO_5x5",
    "tier": "GOLD",
    "rank": "II",
    "leaguePoints": 45,
    "wins": 10,
    "losses": 8,
}


@pytest.fixture
def friend(repo, fake_client):
    f = repo.create_friend("Alpha", "EUW")
    fake_client.accounts[("Alpha", "EUW")] = "PA"
    fake_client.summoners["PA"] = "SA"
    return f


@pytest.fixture
def syncer(repo, fake_client, settings, clock):
    return FriendSync(repo, fake_client, settings, clock=clock)


def link_count(repo, friend_id: str) -> int:
    return repo.connection.execute(
        "SELECT COUNT(*) FROM friend_matches WHERE friend_id = ?", [friend_id]
    ).fetchone()[0]


# =============================================================================
# Identité
# =============================================================================


class TestIdentity:
    @pytest.mark.asyncio
    async def test_puuid_resolved_once(self, repo, fake_client, syncer, friend):
        assert await syncer.ensure_puuid(friend) == "PA"
        assert await syncer.ensure_puuid(friend) == "PA"

        reloaded = repo.get_friend(friend.id)
        assert reloaded.puuid == "PA"
        assert await syncer.ensure_puuid(reloaded) == "PA"
        assert fake_client.count("resolve_account") == 1

    @pytest.mark.asyncio
    async def test_summoner_id_persisted(self, repo, fake_client, syncer, friend):
        assert await syncer.ensure_summoner_id(friend) == "SA"
        assert repo.get_friend(friend.id).summoner_id == "SA"

        await syncer.ensure_summoner_id(repo.get_friend(friend.id))
        assert fake_client.count("resolve_rank_ref") == 1

    @pytest.mark.asyncio
    async def test_unknown_account(self, repo, syncer):
        ghost = repo.create_friend("Ghost", "000")
        with pytest.raises(RiotAPIError) as exc:
            await syncer.ensure_puuid(ghost)
        assert exc.value.is_not_found
        assert repo.get_friend(ghost.id).puuid is None

    def test_get_friend_unknown(self, syncer):
        with pytest.raises(FriendNotFoundError):
            syncer.get_friend("missing")


# =============================================================================
# Rang
# =============================================================================


class TestRank:
    @pytest.mark.asyncio
    async def test_first_sync_stores_rank_and_snapshots(self, repo, fake_client, syncer, friend):
        fake_client.entries["SA"] = [SOLO_GOLD]

        outcome = await syncer.sync_friend_rank(friend)

        assert outcome.skipped is False
        stored = repo.get_friend(friend.id)
        assert (stored.solo.tier, stored.solo.division, stored.solo.lp) == ("GOLD", "II", 45)
        assert stored.flex.tier is None
        # Un snapshot par file suivie, y compris non classée
        assert repo.count_rank_snapshots(friend.id) == 2

    @pytest.mark.asyncio
    async def test_fresh_rank_is_skipped_without_calls(self, fake_client, syncer, friend, clock):
        fake_client.entries["SA"] = [SOLO_GOLD]
        await syncer.sync_friend_rank(friend)
        calls_before = len(fake_client.calls)

        clock.advance(minutes=5)
        outcome = await syncer.sync_friend_rank(friend)

        assert outcome.skipped is True
        assert len(fake_client.calls) == calls_before

    @pytest.mark.asyncio
    async def test_snapshot_on_change_or_interval(self, repo, fake_client, syncer, friend, clock):
        fake_client.entries["SA"] = [SOLO_GOLD]
        await syncer.sync_friend_rank(friend)

        # Rang identique, intervalle non écoulé : pas de snapshot
        clock.advance(minutes=11)
        await syncer.sync_friend_rank(friend)
        assert repo.count_rank_snapshots(friend.id) == 2

        # LP changés : snapshot solo uniquement
        fake_client.entries["SA"] = [{**SOLO_GOLD, "leaguePoints": 63}]
        clock.advance(minutes=11)
        await syncer.sync_friend_rank(friend)
        assert repo.count_rank_snapshots(friend.id) == 3
        assert repo.get_latest_rank_snapshot(friend.id, "RANKED_SOLO_5x5").lp == 63

        # Intervalle écoulé : snapshot des deux files même sans changement
        clock.advance(minutes=61)
        await syncer.sync_friend_rank(friend)
        assert repo.count_rank_snapshots(friend.id) == 5


# =============================================================================
# IDs de match
# =============================================================================


class TestLinkLatest:
    @pytest.mark.asyncio
    async def test_links_are_idempotent(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = ["M3", "M2", "M1"]

        first = await syncer.link_match_ids(friend, mode="latest", max_per_run=20)
        second = await syncer.link_match_ids(friend, mode="latest", max_per_run=20)

        assert first.linked == 3
        assert (first.created, second.linked, second.created) == (3, 3, 0)
        assert first.done is False
        assert link_count(repo, friend.id) == 3
        assert repo.count_incomplete_matches() == 3
        stored = repo.get_friend(friend.id)
        assert stored.last_match_id == "M3"
        assert stored.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_page_size_capped(self, fake_client, syncer, friend):
        fake_client.histories["PA"] = [f"M{i}" for i in range(300)]

        outcome = await syncer.link_match_ids(friend, mode="latest", max_per_run=500)

        assert outcome.linked == 100
        assert fake_client.calls[-1][1]["count"] == 100

    @pytest.mark.asyncio
    async def test_empty_page_keeps_last_match(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = ["M1"]
        await syncer.link_match_ids(friend, mode="latest")
        fake_client.histories["PA"] = []

        outcome = await syncer.link_match_ids(friend, mode="latest")

        assert outcome.linked == 0
        assert repo.get_friend(friend.id).last_match_id == "M1"


class TestLinkBackfill:
    FROM_TS = 1_704_067_200

    @pytest.mark.asyncio
    async def test_requires_from(self, syncer, friend):
        with pytest.raises(ValueError):
            await syncer.link_match_ids(friend, mode="backfill")

    @pytest.mark.asyncio
    async def test_resume_across_runs(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(150)]

        first = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=100, max_pages=5
        )
        assert (first.linked, first.pages, first.done) == (100, 1, False)
        assert repo.get_sync_state(friend.id).matchlist_cursor_start == 100

        second = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=100, max_pages=5
        )
        assert (second.linked, second.done) == (50, True)
        state = repo.get_sync_state(friend.id)
        assert state.matchlist_cursor_start == 150
        assert state.matchlist_done is True
        assert link_count(repo, friend.id) == 150

        calls_before = fake_client.count("list_match_ids")
        third = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=100, max_pages=5
        )
        assert (third.linked, third.pages, third.done) == (0, 0, True)
        assert fake_client.count("list_match_ids") == calls_before

    @pytest.mark.asyncio
    async def test_window_end_frozen_across_runs(self, repo, fake_client, syncer, friend, clock):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(150)]
        await syncer.link_match_ids(friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=100)
        end_ts = repo.get_sync_state(friend.id).backfill_end_ts

        clock.advance(hours=2)
        await syncer.link_match_ids(friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=100)

        assert repo.get_sync_state(friend.id).backfill_end_ts == end_ts

    @pytest.mark.asyncio
    async def test_new_from_resets_cursor(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(40)]
        await syncer.link_match_ids(friend, mode="backfill", from_ts=self.FROM_TS)
        assert repo.get_sync_state(friend.id).matchlist_done is True

        outcome = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS - 86_400
        )

        assert outcome.pages == 1
        assert outcome.done is True
        state = repo.get_sync_state(friend.id)
        assert state.backfill_from_ts == self.FROM_TS - 86_400
        assert state.matchlist_cursor_start == 40

    @pytest.mark.asyncio
    async def test_empty_history_is_exhausted(self, repo, syncer, friend):
        outcome = await syncer.link_match_ids(friend, mode="backfill", from_ts=self.FROM_TS)

        assert (outcome.linked, outcome.pages, outcome.done) == (0, 1, True)
        assert repo.get_sync_state(friend.id).matchlist_cursor_start == 0

    @pytest.mark.asyncio
    async def test_exact_page_needs_one_more_call(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(100)]

        outcome = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=500, max_pages=3
        )

        assert (outcome.linked, outcome.pages, outcome.done) == (100, 2, True)
        assert repo.get_sync_state(friend.id).matchlist_cursor_start == 100

    @pytest.mark.asyncio
    async def test_cursor_saved_when_page_fails(self, repo, fake_client, syncer, friend):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(250)]
        calls = []

        def fail_second_page(method: str) -> None:
            if method == "list_match_ids":
                calls.append(method)
                if len(calls) == 2:
                    raise RiotAPIError(503, "down")

        fake_client.on_call = fail_second_page

        with pytest.raises(RiotAPIError):
            await syncer.link_match_ids(
                friend, mode="backfill", from_ts=self.FROM_TS, max_per_run=500, max_pages=3
            )

        state = repo.get_sync_state(friend.id)
        assert state.matchlist_cursor_start == 100
        assert state.matchlist_done is False

    @pytest.mark.asyncio
    async def test_budget_stops_paging(self, repo, fake_client, syncer, friend, monotonic):
        fake_client.histories["PA"] = [f"M{i:03d}" for i in range(250)]
        budget = TimeBudget(budget_ms=10_000, clock=monotonic)
        monotonic.advance(9)

        outcome = await syncer.link_match_ids(
            friend, mode="backfill", from_ts=self.FROM_TS, max_pages=3, budget=budget
        )

        assert outcome.pages == 0
        assert fake_client.count("list_match_ids") == 0


# =============================================================================
# Détails de match
# =============================================================================


class TestFetchDetails:
    @pytest.mark.asyncio
    async def test_fetch_completes_placeholders(self, repo, fake_client, syncer, match_payload):
        repo.create_match_placeholders(["M1", "M2"])
        fake_client.matches = {mid: match_payload(mid) for mid in ("M1", "M2")}

        outcome = await syncer.fetch_match_details(["M1", "M2"])

        assert outcome.fetched == 2
        assert repo.count_incomplete_matches() == 0
        assert repo.count_participants("M1") == 10

    @pytest.mark.asyncio
    async def test_complete_match_rebuilt_without_call(
        self, repo, fake_client, syncer, match_payload, clock
    ):
        raw = match_payload("M1")
        repo.save_match_detail("M1", raw, extract_match_fields(raw), clock())
        repo.upsert_participants(extract_participants("M1", raw)[:4])

        outcome = await syncer.fetch_match_details(["M1"])

        assert outcome.rebuilt == 1
        assert outcome.fetched == 0
        assert fake_client.count("get_match_detail") == 0
        assert repo.count_participants("M1") == 10

    @pytest.mark.asyncio
    async def test_fresh_stored_payload_is_reused(
        self, repo, fake_client, syncer, match_payload, clock
    ):
        raw = match_payload("M1")
        del raw["info"]["gameStartTimestamp"]
        repo.save_match_detail("M1", raw, extract_match_fields(raw), clock())

        clock.advance(minutes=5)
        outcome = await syncer.fetch_match_details(["M1"])

        assert outcome.reused == 1
        assert fake_client.count("get_match_detail") == 0

    @pytest.mark.asyncio
    async def test_stale_stored_payload_is_refetched(
        self, repo, fake_client, syncer, match_payload, clock
    ):
        raw = match_payload("M1")
        del raw["info"]["gameStartTimestamp"]
        repo.save_match_detail("M1", raw, extract_match_fields(raw), clock())
        fake_client.matches["M1"] = match_payload("M1")

        clock.advance(minutes=31)
        outcome = await syncer.fetch_match_details(["M1"])

        assert outcome.fetched == 1
        assert repo.get_match("M1").is_complete

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, repo, fake_client, syncer, match_payload):
        repo.create_match_placeholders(["MISSING", "M2"])
        fake_client.matches["M2"] = match_payload("M2")

        outcome = await syncer.fetch_match_details(["MISSING", "M2"])

        assert outcome.failed == 1
        assert outcome.fetched == 1
        assert outcome.stopped_early is False
        assert not repo.get_match("MISSING").is_complete

    @pytest.mark.asyncio
    async def test_rate_limit_stops_batch(self, repo, fake_client, syncer):
        repo.create_match_placeholders(["M1", "M2"])
        fake_client.failures["get_match_detail"] = RiotAPIError(429, "Rate limit")

        outcome = await syncer.fetch_match_details(["M1", "M2"])

        assert outcome.failed == 1
        assert outcome.stopped_early is True
        assert fake_client.count("get_match_detail") == 1

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, repo, fake_client, syncer, monotonic):
        repo.create_match_placeholders(["M1"])
        budget = TimeBudget(budget_ms=10_000, clock=monotonic)
        monotonic.advance(9)

        outcome = await syncer.fetch_match_details(["M1"], budget=budget)

        assert outcome.stopped_early is True
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_timeline_fetched_once_when_enabled(
        self, repo, fake_client, settings, clock, match_payload
    ):
        syncer = FriendSync(
            repo, fake_client, dataclasses.replace(settings, fetch_timeline=True), clock=clock
        )
        repo.create_match_placeholders(["M1"])
        fake_client.matches["M1"] = match_payload("M1")
        fake_client.timelines["M1"] = {"info": {"frames": [{"timestamp": 0}]}}

        first = await syncer.fetch_match_details(["M1"])
        second = await syncer.fetch_match_details(["M1"])

        assert first.timelines == 1
        assert second.timelines == 0
        assert repo.get_match("M1").timeline_json == {"info": {"frames": [{"timestamp": 0}]}}


class TestRepairParticipants:
    def test_repairs_partial_rosters(self, repo, syncer, match_payload, clock):
        for mid in ("M1", "M2"):
            raw = match_payload(mid)
            repo.save_match_detail(mid, raw, extract_match_fields(raw), clock())
            repo.upsert_participants(extract_participants(mid, raw)[:3])

        assert syncer.repair_participants(10) == 2
        assert repo.count_participants("M1") == 10
        assert syncer.repair_participants(10) == 0

    def test_zero_limit(self, syncer):
        assert syncer.repair_participants(0) == 0


# =============================================================================
# Sélection des détails
# =============================================================================


class TestSelectDetailCandidates:
    @pytest.fixture
    def linked(self, repo, clock):
        a = repo.create_friend("A", "1")
        b = repo.create_friend("B", "1")
        repo.create_match_placeholders(["M1", "M2", "M3"])
        repo.link_friend_matches(a.id, ["M1"], clock())
        clock.advance(minutes=1)
        repo.link_friend_matches(a.id, ["M2"], clock())
        clock.advance(minutes=1)
        repo.link_friend_matches(b.id, ["M3"], clock())
        return a, b

    def test_processed_friends_first_then_oldest(self, repo, fake_client, settings, clock, linked):
        a, _ = linked
        syncer = FriendSync(
            repo, fake_client, dataclasses.replace(settings, details_per_friend=1), clock=clock
        )

        picked = syncer.select_detail_candidates([a.id], mode="latest", limit=3, max_friends=5)

        assert picked == ["M2", "M1", "M3"]
        assert syncer.select_detail_candidates(
            [a.id], mode="latest", limit=2, max_friends=5
        ) == ["M2", "M1"]

    def test_zero_per_friend_uses_global_order(self, repo, fake_client, settings, clock, linked):
        a, _ = linked
        syncer = FriendSync(
            repo, fake_client, dataclasses.replace(settings, details_per_friend=0), clock=clock
        )

        assert syncer.select_detail_candidates(
            [a.id], mode="latest", limit=2, max_friends=5
        ) == ["M1", "M2"]

    def test_backfill_adds_other_friends(self, repo, fake_client, settings, clock, linked):
        syncer = FriendSync(
            repo, fake_client, dataclasses.replace(settings, details_per_friend=1), clock=clock
        )

        picked = syncer.select_detail_candidates([], mode="backfill", limit=2, max_friends=5)

        assert len(picked) == 2
        assert "M3" in picked

    def test_zero_limit(self, syncer, linked):
        assert syncer.select_detail_candidates([], mode="latest", limit=0, max_friends=5) == []

    def test_default_per_friend_by_mode(self, syncer):
        assert syncer.details_per_friend("latest") == 3
        assert syncer.details_per_friend("backfill") == 2
