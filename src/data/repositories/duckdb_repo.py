"""
Repository DuckDB du pipeline de synchronisation.
(DuckDB repository for the sync pipeline)

HOW IT WORKS:
Une seule base (data/friends.duckdb par défaut) contient les amis, leurs
curseurs, les matchs (payload JSON brut), les liens ami↔match, la projection
match_participants, les snapshots de rang et la ligne du verrou global.

Les écritures sont idempotentes (ON CONFLICT DO NOTHING / DO UPDATE) et les
verrous sont acquis par `UPDATE ... WHERE <libre> RETURNING`.

Les timestamps sont stockés en TIMESTAMP naïf UTC et rendus en datetime UTC.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import duckdb

from src.data.domain.refdata import is_ranked_queue, queue_label
from src.data.sync.migrations import GLOBAL_LOCK_ROW_ID, ensure_schema, ensure_sync_lock_table
from src.data.sync.models import (
    EPOCH,
    FriendRow,
    MatchFields,
    MatchParticipantRow,
    MatchRow,
    RankInfo,
    RankSnapshotRow,
    SyncStateRow,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Conversions
# =============================================================================


def _to_db(dt: datetime | None) -> datetime | None:
    """datetime (aware ou naïf UTC) → TIMESTAMP naïf UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _from_db(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Payload JSON illisible en base, ignoré")
        return None


_FRIEND_COLUMNS = """
    f.id, f.riot_name, f.riot_tag, f.region, f.avatar_url, f.puuid, f.summoner_id,
    f.ranked_solo_tier, f.ranked_solo_division, f.ranked_solo_lp,
    f.ranked_solo_wins, f.ranked_solo_losses,
    f.ranked_flex_tier, f.ranked_flex_division, f.ranked_flex_lp,
    f.ranked_flex_wins, f.ranked_flex_losses,
    f.last_match_id, f.last_sync_at, f.rank_fetched_at, f.created_at
"""

_STATE_COLUMNS = """
    friend_id, matchlist_cursor_start, matchlist_done, backfill_from_ts, backfill_end_ts,
    sync_lock_until, last_run_at, updated_at
"""

_PARTICIPANT_COLUMNS: tuple[str, ...] = (
    "match_id",
    "puuid",
    "team_id",
    "win",
    "team_win",
    "summoner_name",
    "riot_id_game_name",
    "riot_id_tagline",
    "champion_name",
    "lane",
    "role",
    "kills",
    "deaths",
    "assists",
    "gold_earned",
    "total_damage_dealt_to_champions",
    "vision_score",
    "total_minions_killed",
    "neutral_minions_killed",
)

# Un ami a du travail de backfill pour une borne basse donnée
_BACKFILL_WORK_PREDICATE = """
    s.friend_id IS NULL
    OR NOT s.matchlist_done
    OR s.backfill_from_ts IS NULL
    OR s.backfill_from_ts <> ?
"""

_INCOMPLETE_LINKS = """
    friend_matches fm
    LEFT JOIN matches m ON m.id = fm.match_id
"""


def _friend_from_row(row: tuple) -> FriendRow:
    return FriendRow(
        id=row[0],
        riot_name=row[1],
        riot_tag=row[2],
        region=row[3],
        avatar_url=row[4],
        puuid=row[5],
        summoner_id=row[6],
        solo=RankInfo(tier=row[7], division=row[8], lp=row[9], wins=row[10], losses=row[11]),
        flex=RankInfo(tier=row[12], division=row[13], lp=row[14], wins=row[15], losses=row[16]),
        last_match_id=row[17],
        last_sync_at=_from_db(row[18]),
        rank_fetched_at=_from_db(row[19]),
        created_at=_from_db(row[20]),
    )


def _state_from_row(row: tuple) -> SyncStateRow:
    return SyncStateRow(
        friend_id=row[0],
        matchlist_cursor_start=int(row[1] or 0),
        matchlist_done=bool(row[2]),
        backfill_from_ts=row[3],
        backfill_end_ts=row[4],
        sync_lock_until=_from_db(row[5]),
        last_run_at=_from_db(row[6]),
        updated_at=_from_db(row[7]),
    )


# =============================================================================
# Repository
# =============================================================================


class DuckDBSyncRepository:
    """
    Implémentation DuckDB de SyncRepository.
    (DuckDB implementation of SyncRepository)
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        conn: duckdb.DuckDBPyConnection | None = None,
        create_schema: bool = True,
    ) -> None:
        """
        Args:
            db_path: Chemin de la base (":memory:" pour les tests).
            conn: Connexion existante (prioritaire sur db_path).
            create_schema: Créer les tables manquantes à l'ouverture.
        """
        self._db_path = str(db_path)
        if conn is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(self._db_path)
        self._conn = conn
        if create_schema:
            ensure_schema(self._conn)

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> DuckDBSyncRepository:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _scalar(self, sql: str, params: list[Any] | None = None) -> Any:
        row = self._conn.execute(sql, params or []).fetchone()
        return row[0] if row else None

    # =========================================================================
    # Amis
    # =========================================================================

    def create_friend(
        self,
        riot_name: str,
        riot_tag: str,
        *,
        region: str = "euw1",
        avatar_url: str | None = None,
        friend_id: str | None = None,
    ) -> FriendRow:
        fid = friend_id or uuid.uuid4().hex
        self._conn.execute(
            """
            INSERT INTO friends (id, riot_name, riot_tag, region, avatar_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [fid, riot_name.strip(), riot_tag.strip(), region.lower(), avatar_url, _to_db(utc_now())],
        )
        friend = self.get_friend(fid)
        assert friend is not None
        logger.info(f"Ami créé: {friend.riot_id} ({fid})")
        return friend

    def get_friend(self, friend_id: str) -> FriendRow | None:
        row = self._conn.execute(
            f"SELECT {_FRIEND_COLUMNS} FROM friends f WHERE f.id = ?", [friend_id]
        ).fetchone()
        return _friend_from_row(row) if row else None

    def find_friend_by_riot_id(self, riot_name: str, riot_tag: str) -> FriendRow | None:
        row = self._conn.execute(
            f"""
            SELECT {_FRIEND_COLUMNS} FROM friends f
            WHERE lower(f.riot_name) = lower(?) AND lower(f.riot_tag) = lower(?)
            """,
            [riot_name.strip(), riot_tag.strip()],
        ).fetchone()
        return _friend_from_row(row) if row else None

    def list_friends(self) -> list[FriendRow]:
        rows = self._conn.execute(
            f"SELECT {_FRIEND_COLUMNS} FROM friends f ORDER BY f.created_at ASC, f.id ASC"
        ).fetchall()
        return [_friend_from_row(r) for r in rows]

    def list_friends_by_staleness(self, limit: int) -> list[FriendRow]:
        rows = self._conn.execute(
            f"""
            SELECT {_FRIEND_COLUMNS} FROM friends f
            ORDER BY f.last_sync_at ASC NULLS FIRST, f.created_at ASC, f.id ASC
            LIMIT ?
            """,
            [max(0, limit)],
        ).fetchall()
        return [_friend_from_row(r) for r in rows]

    def list_backfill_candidates(self, from_ts: int, limit: int) -> list[FriendRow]:
        rows = self._conn.execute(
            f"""
            SELECT {_FRIEND_COLUMNS} FROM friends f
            LEFT JOIN friend_sync_state s ON s.friend_id = f.id
            WHERE {_BACKFILL_WORK_PREDICATE}
            ORDER BY s.updated_at ASC NULLS FIRST, f.created_at ASC, f.id ASC
            LIMIT ?
            """,
            [from_ts, max(0, limit)],
        ).fetchall()
        return [_friend_from_row(r) for r in rows]

    def set_friend_puuid(self, friend_id: str, puuid: str) -> str:
        self._conn.execute(
            "UPDATE friends SET puuid = ? WHERE id = ? AND puuid IS NULL", [puuid, friend_id]
        )
        stored = self._scalar("SELECT puuid FROM friends WHERE id = ?", [friend_id])
        if stored is None:
            raise LookupError(f"Ami introuvable: {friend_id}")
        if stored != puuid:
            logger.warning(f"PUUID déjà défini pour {friend_id}, valeur existante conservée")
        return stored

    def set_friend_summoner_id(self, friend_id: str, summoner_id: str) -> None:
        self._conn.execute(
            "UPDATE friends SET summoner_id = ? WHERE id = ?", [summoner_id, friend_id]
        )

    def update_friend_rank(
        self, friend_id: str, solo: RankInfo, flex: RankInfo, fetched_at: datetime
    ) -> None:
        self._conn.execute(
            """
            UPDATE friends SET
                ranked_solo_tier = ?, ranked_solo_division = ?, ranked_solo_lp = ?,
                ranked_solo_wins = ?, ranked_solo_losses = ?,
                ranked_flex_tier = ?, ranked_flex_division = ?, ranked_flex_lp = ?,
                ranked_flex_wins = ?, ranked_flex_losses = ?,
                rank_fetched_at = ?
            WHERE id = ?
            """,
            [
                solo.tier,
                solo.division,
                solo.lp,
                solo.wins,
                solo.losses,
                flex.tier,
                flex.division,
                flex.lp,
                flex.wins,
                flex.losses,
                _to_db(fetched_at),
                friend_id,
            ],
        )

    def touch_friend_sync(
        self, friend_id: str, at: datetime, *, last_match_id: str | None = None
    ) -> None:
        self._conn.execute(
            """
            UPDATE friends SET last_sync_at = ?, last_match_id = COALESCE(?, last_match_id)
            WHERE id = ?
            """,
            [_to_db(at), last_match_id, friend_id],
        )

    # =========================================================================
    # États de synchronisation
    # =========================================================================

    def ensure_sync_state(self, friend_id: str, at: datetime | None = None) -> SyncStateRow:
        self._conn.execute(
            """
            INSERT INTO friend_sync_state (friend_id, updated_at) VALUES (?, ?)
            ON CONFLICT (friend_id) DO NOTHING
            """,
            [friend_id, _to_db(at or utc_now())],
        )
        state = self.get_sync_state(friend_id)
        assert state is not None
        return state

    def get_sync_state(self, friend_id: str) -> SyncStateRow | None:
        row = self._conn.execute(
            f"SELECT {_STATE_COLUMNS} FROM friend_sync_state WHERE friend_id = ?", [friend_id]
        ).fetchone()
        return _state_from_row(row) if row else None

    def reset_backfill_window(
        self, friend_id: str, from_ts: int, end_ts: int, at: datetime
    ) -> SyncStateRow:
        self.ensure_sync_state(friend_id, at)
        self._conn.execute(
            """
            UPDATE friend_sync_state SET
                backfill_from_ts = ?, backfill_end_ts = ?,
                matchlist_cursor_start = 0, matchlist_done = FALSE, updated_at = ?
            WHERE friend_id = ?
            """,
            [from_ts, end_ts, _to_db(at), friend_id],
        )
        state = self.get_sync_state(friend_id)
        assert state is not None
        return state

    def freeze_backfill_window(
        self, friend_id: str, from_ts: int, end_ts: int, at: datetime
    ) -> SyncStateRow:
        self.ensure_sync_state(friend_id, at)
        self._conn.execute(
            """
            UPDATE friend_sync_state SET backfill_from_ts = ?, backfill_end_ts = ?, updated_at = ?
            WHERE friend_id = ?
            """,
            [from_ts, end_ts, _to_db(at), friend_id],
        )
        state = self.get_sync_state(friend_id)
        assert state is not None
        return state

    def save_cursor(self, friend_id: str, cursor: int, done: bool, at: datetime) -> None:
        self._conn.execute(
            """
            UPDATE friend_sync_state SET
                matchlist_cursor_start = ?, matchlist_done = ?, last_run_at = ?, updated_at = ?
            WHERE friend_id = ?
            """,
            [cursor, done, _to_db(at), _to_db(at), friend_id],
        )

    def mark_state_run(self, friend_id: str, at: datetime) -> None:
        self.ensure_sync_state(friend_id, at)
        self._conn.execute(
            "UPDATE friend_sync_state SET last_run_at = ?, updated_at = ? WHERE friend_id = ?",
            [_to_db(at), _to_db(at), friend_id],
        )

    # =========================================================================
    # Matchs et participants
    # =========================================================================

    def create_match_placeholders(self, match_ids: list[str]) -> int:
        if not match_ids:
            return 0
        existing = {
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM matches WHERE list_contains(?, id)", [match_ids]
            ).fetchall()
        }
        new_ids = [mid for mid in dict.fromkeys(match_ids) if mid not in existing]
        if new_ids:
            self._conn.executemany(
                """
                INSERT INTO matches (id, raw_json, fetched_at) VALUES (?, '{}', ?)
                ON CONFLICT (id) DO NOTHING
                """,
                [[mid, _to_db(EPOCH)] for mid in new_ids],
            )
        return len(new_ids)

    def link_friend_matches(self, friend_id: str, match_ids: list[str], at: datetime) -> int:
        if not match_ids:
            return 0
        existing = {
            r[0]
            for r in self._conn.execute(
                "SELECT match_id FROM friend_matches WHERE friend_id = ? AND list_contains(?, match_id)",
                [friend_id, match_ids],
            ).fetchall()
        }
        new_ids = [mid for mid in dict.fromkeys(match_ids) if mid not in existing]
        if new_ids:
            self._conn.executemany(
                """
                INSERT INTO friend_matches (friend_id, match_id, added_at) VALUES (?, ?, ?)
                ON CONFLICT (friend_id, match_id) DO NOTHING
                """,
                [[friend_id, mid, _to_db(at)] for mid in new_ids],
            )
        return len(new_ids)

    def get_match(self, match_id: str) -> MatchRow | None:
        row = self._conn.execute(
            """
            SELECT id, raw_json, timeline_json, platform, game_start_ms, game_duration_s,
                   queue_id, fetched_at, timeline_fetched_at
            FROM matches WHERE id = ?
            """,
            [match_id],
        ).fetchone()
        if not row:
            return None
        raw = _load_json(row[1])
        timeline = _load_json(row[2])
        return MatchRow(
            id=row[0],
            raw_json=raw if isinstance(raw, dict) else {},
            timeline_json=timeline if isinstance(timeline, dict) else None,
            platform=row[3],
            game_start_ms=row[4],
            game_duration_s=row[5],
            queue_id=row[6],
            fetched_at=_from_db(row[7]),
            timeline_fetched_at=_from_db(row[8]),
        )

    def save_match_detail(
        self, match_id: str, raw: dict[str, Any], fields: MatchFields, fetched_at: datetime
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO matches (
                id, raw_json, platform, game_start_ms, game_duration_s, queue_id, fetched_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                raw_json = excluded.raw_json,
                platform = excluded.platform,
                game_start_ms = excluded.game_start_ms,
                game_duration_s = excluded.game_duration_s,
                queue_id = excluded.queue_id,
                fetched_at = excluded.fetched_at
            """,
            [
                match_id,
                json.dumps(raw),
                fields.platform,
                fields.game_start_ms,
                fields.game_duration_s,
                fields.queue_id,
                _to_db(fetched_at),
            ],
        )

    def save_match_timeline(
        self, match_id: str, timeline: dict[str, Any], fetched_at: datetime
    ) -> None:
        self._conn.execute(
            "UPDATE matches SET timeline_json = ?, timeline_fetched_at = ? WHERE id = ?",
            [json.dumps(timeline), _to_db(fetched_at), match_id],
        )

    def count_participants(self, match_id: str) -> int:
        return int(
            self._scalar("SELECT COUNT(*) FROM match_participants WHERE match_id = ?", [match_id])
            or 0
        )

    def upsert_participants(self, rows: list[MatchParticipantRow]) -> int:
        if not rows:
            return 0
        cols = ", ".join(_PARTICIPANT_COLUMNS)
        placeholders = ", ".join("?" for _ in _PARTICIPANT_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _PARTICIPANT_COLUMNS[2:])
        self._conn.executemany(
            f"""
            INSERT INTO match_participants ({cols}) VALUES ({placeholders})
            ON CONFLICT (match_id, puuid) DO UPDATE SET {updates}
            """,
            [[getattr(r, c) for c in _PARTICIPANT_COLUMNS] for r in rows],
        )
        return len(rows)

    # =========================================================================
    # Sélection et reporting
    # =========================================================================

    def list_incomplete_match_ids_for_friend(self, friend_id: str, limit: int) -> list[str]:
        rows = self._conn.execute(
            f"""
            SELECT fm.match_id FROM {_INCOMPLETE_LINKS}
            WHERE fm.friend_id = ? AND m.game_start_ms IS NULL
            ORDER BY fm.added_at DESC, fm.match_id DESC
            LIMIT ?
            """,
            [friend_id, max(0, limit)],
        ).fetchall()
        return [r[0] for r in rows]

    def list_incomplete_match_ids(self, limit: int) -> list[str]:
        rows = self._conn.execute(
            f"""
            SELECT fm.match_id, MIN(fm.added_at) AS first_linked_at
            FROM {_INCOMPLETE_LINKS}
            WHERE m.game_start_ms IS NULL
            GROUP BY fm.match_id
            ORDER BY first_linked_at ASC, fm.match_id ASC
            LIMIT ?
            """,
            [max(0, limit)],
        ).fetchall()
        return [r[0] for r in rows]

    def list_friend_ids_with_incomplete_matches(self, limit: int) -> list[str]:
        rows = self._conn.execute(
            f"""
            SELECT f.id FROM friends f
            WHERE EXISTS (
                SELECT 1 FROM {_INCOMPLETE_LINKS}
                WHERE fm.friend_id = f.id AND m.game_start_ms IS NULL
            )
            ORDER BY f.last_sync_at ASC NULLS FIRST, f.created_at ASC, f.id ASC
            LIMIT ?
            """,
            [max(0, limit)],
        ).fetchall()
        return [r[0] for r in rows]

    def list_matches_missing_participants(self, limit: int, roster_size: int) -> list[str]:
        rows = self._conn.execute(
            """
            SELECT m.id FROM matches m
            LEFT JOIN (
                SELECT match_id, COUNT(*) AS n FROM match_participants GROUP BY match_id
            ) p ON p.match_id = m.id
            WHERE m.game_start_ms IS NOT NULL AND COALESCE(p.n, 0) < ?
            ORDER BY m.game_start_ms DESC
            LIMIT ?
            """,
            [roster_size, max(0, limit)],
        ).fetchall()
        return [r[0] for r in rows]

    def count_incomplete_matches(self) -> int:
        return int(self._scalar("SELECT COUNT(*) FROM matches WHERE game_start_ms IS NULL") or 0)

    def count_unfinished_backfills(self, from_ts: int | None = None) -> int:
        if from_ts is None:
            return int(
                self._scalar(
                    """
                    SELECT COUNT(*) FROM friend_sync_state
                    WHERE backfill_from_ts IS NOT NULL AND NOT matchlist_done
                    """
                )
                or 0
            )
        return int(
            self._scalar(
                f"""
                SELECT COUNT(*) FROM friends f
                LEFT JOIN friend_sync_state s ON s.friend_id = f.id
                WHERE {_BACKFILL_WORK_PREDICATE}
                """,
                [from_ts],
            )
            or 0
        )

    def get_sync_status(self, recent: int = 15) -> dict[str, Any]:
        """Compteurs globaux et derniers états de synchronisation touchés."""
        counts = {
            "friends": int(self._scalar("SELECT COUNT(*) FROM friends") or 0),
            "matches": int(self._scalar("SELECT COUNT(*) FROM matches") or 0),
            "pending_match_details": self.count_incomplete_matches(),
            "pending_backfill_friends": self.count_unfinished_backfills(),
        }
        rows = self._conn.execute(
            """
            SELECT s.friend_id, f.riot_name, f.riot_tag, s.matchlist_cursor_start,
                   s.matchlist_done, s.backfill_from_ts, s.backfill_end_ts,
                   s.last_run_at, s.updated_at
            FROM friend_sync_state s
            JOIN friends f ON f.id = s.friend_id
            ORDER BY s.updated_at DESC NULLS LAST
            LIMIT ?
            """,
            [max(0, recent)],
        ).fetchall()
        recent_states = []
        for r in rows:
            last_run_at = _from_db(r[7])
            updated_at = _from_db(r[8])
            recent_states.append(
                {
                    "friend_id": r[0],
                    "riot": f"{r[1]}#{r[2]}",
                    "matchlist_cursor_start": r[3],
                    "matchlist_done": bool(r[4]),
                    "backfill_from_ts": r[5],
                    "backfill_end_ts": r[6],
                    "last_run_at": last_run_at.isoformat() if last_run_at else None,
                    "updated_at": updated_at.isoformat() if updated_at else None,
                }
            )
        queues = [
            {
                "queue_id": queue_id,
                "label": queue_label(queue_id),
                "ranked": is_ranked_queue(queue_id),
                "matches": int(n),
            }
            for queue_id, n in self._conn.execute(
                """
                SELECT queue_id, COUNT(*) AS n FROM matches
                WHERE game_start_ms IS NOT NULL
                GROUP BY queue_id
                ORDER BY n DESC, queue_id
                """
            ).fetchall()
        ]
        return {"ok": True, "counts": counts, "queues": queues, "recent": recent_states}

    def list_friend_participants(self, take_matches: int) -> list[MatchParticipantRow]:
        """Participations des amis (PUUID connu) dans les N matchs complets les plus récents."""
        rows = self._conn.execute(
            """
            WITH recent AS (
                SELECT id FROM matches
                WHERE game_start_ms IS NOT NULL
                ORDER BY game_start_ms DESC, id DESC
                LIMIT ?
            )
            SELECT p.match_id, p.puuid, p.team_id, p.win, p.team_win
            FROM match_participants p
            JOIN recent r ON r.id = p.match_id
            WHERE p.puuid IN (SELECT puuid FROM friends WHERE puuid IS NOT NULL)
            ORDER BY p.match_id, p.puuid
            """,
            [max(0, take_matches)],
        ).fetchall()
        return [
            MatchParticipantRow(match_id=r[0], puuid=r[1], team_id=r[2], win=r[3], team_win=r[4])
            for r in rows
        ]

    # =========================================================================
    # Snapshots de rang
    # =========================================================================

    def get_latest_rank_snapshot(self, friend_id: str, queue_type: str) -> RankSnapshotRow | None:
        row = self._conn.execute(
            """
            SELECT friend_id, queue_type, tier, division, lp, wins, losses, created_at
            FROM rank_snapshots
            WHERE friend_id = ? AND queue_type = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            [friend_id, queue_type],
        ).fetchone()
        if not row:
            return None
        return RankSnapshotRow(
            friend_id=row[0],
            queue_type=row[1],
            tier=row[2],
            division=row[3],
            lp=row[4],
            wins=row[5],
            losses=row[6],
            created_at=_from_db(row[7]),
        )

    def add_rank_snapshot(self, row: RankSnapshotRow) -> None:
        self._conn.execute(
            """
            INSERT INTO rank_snapshots (friend_id, queue_type, tier, division, lp, wins, losses, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                row.friend_id,
                row.queue_type,
                row.tier,
                row.division,
                row.lp,
                row.wins,
                row.losses,
                _to_db(row.created_at or utc_now()),
            ],
        )

    def count_rank_snapshots(self, friend_id: str) -> int:
        return int(
            self._scalar("SELECT COUNT(*) FROM rank_snapshots WHERE friend_id = ?", [friend_id])
            or 0
        )

    # =========================================================================
    # Lignes de verrou
    # =========================================================================

    def ensure_lock_storage(self) -> None:
        ensure_sync_lock_table(self._conn)

    def try_lock_global(self, ttl_ms: int, now: datetime) -> bool:
        rows = self._conn.execute(
            """
            UPDATE sync_lock SET locked_until = ?
            WHERE id = ? AND (locked_until IS NULL OR locked_until < ?)
            RETURNING id
            """,
            [_to_db(now + timedelta(milliseconds=ttl_ms)), GLOBAL_LOCK_ROW_ID, _to_db(now)],
        ).fetchall()
        return len(rows) == 1

    def release_global(self, now: datetime) -> None:
        self._conn.execute(
            "UPDATE sync_lock SET locked_until = NULL WHERE id = ?", [GLOBAL_LOCK_ROW_ID]
        )

    def try_lock_friend(self, friend_id: str, ttl_ms: int, now: datetime) -> bool:
        rows = self._conn.execute(
            """
            UPDATE friend_sync_state SET sync_lock_until = ?
            WHERE friend_id = ? AND (sync_lock_until IS NULL OR sync_lock_until < ?)
            RETURNING friend_id
            """,
            [_to_db(now + timedelta(milliseconds=ttl_ms)), friend_id, _to_db(now)],
        ).fetchall()
        return len(rows) == 1

    def release_friend(self, friend_id: str, now: datetime) -> None:
        self._conn.execute(
            "UPDATE friend_sync_state SET sync_lock_until = NULL WHERE friend_id = ?", [friend_id]
        )
