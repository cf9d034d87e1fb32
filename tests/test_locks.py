"""Tests des verrous de synchronisation (global et par ami)."""

from __future__ import annotations

from unittest.mock import MagicMock

import duckdb
import pytest

from src.data.sync.locks import (
    GLOBAL_LOCK_KEY,
    DuckDBLockStore,
    SyncAlreadyRunningError,
    friend_lock_key,
    global_sync_lock,
    release_quietly,
)


class TestDuckDBLockStore:
    def test_global_lock_exclusive(self, repo, clock):
        store = DuckDBLockStore(repo, clock=clock)

        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)
        assert not store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

        store.release(GLOBAL_LOCK_KEY)
        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

    def test_expired_lock_can_be_taken(self, repo, clock):
        store = DuckDBLockStore(repo, clock=clock)
        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

        clock.advance(seconds=59)
        assert not store.try_acquire(GLOBAL_LOCK_KEY, 60_000)
        clock.advance(seconds=2)
        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

    def test_friend_lock_creates_missing_state(self, repo, clock):
        friend = repo.create_friend("Alpha", "EUW")
        store = DuckDBLockStore(repo, clock=clock)

        assert repo.get_sync_state(friend.id) is None
        assert store.try_acquire(friend_lock_key(friend.id), 60_000)
        assert repo.get_sync_state(friend.id) is not None
        assert not store.try_acquire(friend_lock_key(friend.id), 60_000)

    def test_friend_locks_are_independent(self, repo, clock):
        a = repo.create_friend("A", "1")
        b = repo.create_friend("B", "1")
        store = DuckDBLockStore(repo, clock=clock)

        assert store.try_acquire(friend_lock_key(a.id), 60_000)
        assert store.try_acquire(friend_lock_key(b.id), 60_000)
        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

    def test_missing_lock_table_is_recreated(self, repo, clock):
        repo.connection.execute("DROP TABLE sync_lock")
        store = DuckDBLockStore(repo, clock=clock)

        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)

    def test_unknown_key(self, repo, clock):
        store = DuckDBLockStore(repo, clock=clock)
        with pytest.raises(ValueError):
            store.try_acquire("other", 1_000)


class TestGlobalSyncLock:
    @pytest.mark.asyncio
    async def test_contention_raises(self, repo, clock):
        store = DuckDBLockStore(repo, clock=clock)

        async with global_sync_lock(store, 60_000):
            with pytest.raises(SyncAlreadyRunningError):
                async with global_sync_lock(store, 60_000):
                    pass

        # Relâché en sortie de bloc
        async with global_sync_lock(store, 60_000):
            pass

    @pytest.mark.asyncio
    async def test_released_on_error(self, repo, clock):
        store = DuckDBLockStore(repo, clock=clock)

        with pytest.raises(RuntimeError):
            async with global_sync_lock(store, 60_000):
                raise RuntimeError("boom")

        assert store.try_acquire(GLOBAL_LOCK_KEY, 60_000)


class TestReleaseQuietly:
    def test_release_failure_is_logged_not_raised(self, caplog):
        store = MagicMock()
        store.release.side_effect = duckdb.IOException("disk gone")

        release_quietly(store, GLOBAL_LOCK_KEY)

        store.release.assert_called_once_with(GLOBAL_LOCK_KEY)
        assert "expirera avec son TTL" in caplog.text
