"""Verrous de synchronisation (global et par ami).

Les verrous sont des lignes en base acquises par mise à jour conditionnelle
(libre si `locked_until` est NULL ou passé), ce qui fonctionne entre plusieurs
process sans mémoire partagée. Un verrou non relâché expire avec son TTL.

Usage:
    store = DuckDBLockStore(repo)
    async with global_sync_lock(store, ttl_ms=600_000):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol, runtime_checkable

import duckdb

from src.data.repositories.protocol import SyncRepository
from src.data.sync.models import utc_now

logger = logging.getLogger(__name__)

GLOBAL_LOCK_KEY = "global"
FRIEND_LOCK_PREFIX = "friend:"

DEFAULT_GLOBAL_LOCK_TTL_MS = 10 * 60_000
DEFAULT_FRIEND_LOCK_TTL_MS = 5 * 60_000


class SyncAlreadyRunningError(RuntimeError):
    """Une autre synchronisation détient le verrou global."""


def friend_lock_key(friend_id: str) -> str:
    return f"{FRIEND_LOCK_PREFIX}{friend_id}"


@runtime_checkable
class LockStore(Protocol):
    """Stockage de verrous à bail (TTL)."""

    def try_acquire(self, key: str, ttl_ms: int) -> bool:
        """True si le verrou a été pris (ne bloque jamais)."""
        ...

    def release(self, key: str) -> None:
        """Relâche le verrou (best-effort)."""
        ...


class DuckDBLockStore:
    """LockStore adossé aux lignes sync_lock / friend_sync_state.

    Si la table ou la ligne du verrou manque, elle est recréée et
    l'acquisition retentée une fois.
    """

    def __init__(self, repo: SyncRepository, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._repo = repo
        self._clock = clock

    def _try_once(self, key: str, ttl_ms: int, now: datetime) -> bool:
        if key == GLOBAL_LOCK_KEY:
            return self._repo.try_lock_global(ttl_ms, now)
        if key.startswith(FRIEND_LOCK_PREFIX):
            return self._repo.try_lock_friend(key[len(FRIEND_LOCK_PREFIX) :], ttl_ms, now)
        raise ValueError(f"Clé de verrou inconnue: {key}")

    def _heal(self, key: str) -> None:
        if key == GLOBAL_LOCK_KEY:
            self._repo.ensure_lock_storage()
        else:
            self._repo.ensure_sync_state(key[len(FRIEND_LOCK_PREFIX) :])

    def try_acquire(self, key: str, ttl_ms: int) -> bool:
        now = self._clock()
        try:
            if self._try_once(key, ttl_ms, now):
                return True
        except duckdb.CatalogException as e:
            logger.warning(f"Stockage du verrou {key} absent, recréation: {e}")

        # Ligne ou table manquante : on recrée puis on retente une seule fois
        self._heal(key)
        return self._try_once(key, ttl_ms, now)

    def release(self, key: str) -> None:
        now = self._clock()
        if key == GLOBAL_LOCK_KEY:
            self._repo.release_global(now)
        elif key.startswith(FRIEND_LOCK_PREFIX):
            self._repo.release_friend(key[len(FRIEND_LOCK_PREFIX) :], now)
        else:
            raise ValueError(f"Clé de verrou inconnue: {key}")


def release_quietly(store: LockStore, key: str) -> None:
    """Relâche un verrou sans jamais lever (le TTL libère de toute façon)."""
    try:
        store.release(key)
    except (duckdb.Error, OSError) as e:
        logger.warning(f"Échec du relâchement du verrou {key} (expirera avec son TTL): {e}")


@asynccontextmanager
async def global_sync_lock(
    store: LockStore, ttl_ms: int = DEFAULT_GLOBAL_LOCK_TTL_MS
) -> AsyncIterator[None]:
    """Prend le verrou global pour la durée du bloc.

    Raises:
        SyncAlreadyRunningError: Si le verrou est déjà détenu.
    """
    if not store.try_acquire(GLOBAL_LOCK_KEY, ttl_ms):
        raise SyncAlreadyRunningError("Sync already running. Réessaie dans quelques secondes.")
    try:
        yield
    finally:
        release_quietly(store, GLOBAL_LOCK_KEY)
