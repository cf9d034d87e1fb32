"""Schéma DuckDB et migrations de colonnes.

Toutes les tables sont créées en `IF NOT EXISTS` : `ensure_schema` peut être
appelé à chaque ouverture de connexion et recrée ce qui manque (y compris la
table du verrou global).

Les timestamps sont stockés en TIMESTAMP naïf (UTC).
"""

from __future__ import annotations

import logging

import duckdb

logger = logging.getLogger(__name__)

GLOBAL_LOCK_ROW_ID = 1

# =============================================================================
# DDL
# =============================================================================

FRIENDS_DDL = """
CREATE TABLE IF NOT EXISTS friends (
    id VARCHAR PRIMARY KEY,
    riot_name VARCHAR NOT NULL,
    riot_tag VARCHAR NOT NULL,
    region VARCHAR NOT NULL DEFAULT 'euw1',
    avatar_url VARCHAR,
    puuid VARCHAR,
    summoner_id VARCHAR,
    ranked_solo_tier VARCHAR,
    ranked_solo_division VARCHAR,
    ranked_solo_lp INTEGER,
    ranked_solo_wins INTEGER,
    ranked_solo_losses INTEGER,
    ranked_flex_tier VARCHAR,
    ranked_flex_division VARCHAR,
    ranked_flex_lp INTEGER,
    ranked_flex_wins INTEGER,
    ranked_flex_losses INTEGER,
    last_match_id VARCHAR,
    last_sync_at TIMESTAMP,
    rank_fetched_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (riot_name, riot_tag)
)
"""

FRIEND_SYNC_STATE_DDL = """
CREATE TABLE IF NOT EXISTS friend_sync_state (
    friend_id VARCHAR PRIMARY KEY,
    matchlist_cursor_start INTEGER NOT NULL DEFAULT 0,
    matchlist_done BOOLEAN NOT NULL DEFAULT FALSE,
    backfill_from_ts BIGINT,
    backfill_end_ts BIGINT,
    sync_lock_until TIMESTAMP,
    last_run_at TIMESTAMP,
    updated_at TIMESTAMP
)
"""

MATCHES_DDL = """
CREATE TABLE IF NOT EXISTS matches (
    id VARCHAR PRIMARY KEY,
    raw_json VARCHAR NOT NULL DEFAULT '{}',
    timeline_json VARCHAR,
    platform VARCHAR,
    game_start_ms BIGINT,
    game_duration_s INTEGER,
    queue_id INTEGER,
    fetched_at TIMESTAMP NOT NULL,
    timeline_fetched_at TIMESTAMP
)
"""

FRIEND_MATCHES_DDL = """
CREATE TABLE IF NOT EXISTS friend_matches (
    friend_id VARCHAR NOT NULL,
    match_id VARCHAR NOT NULL,
    added_at TIMESTAMP NOT NULL,
    PRIMARY KEY (friend_id, match_id)
)
"""

MATCH_PARTICIPANTS_DDL = """
CREATE TABLE IF NOT EXISTS match_participants (
    match_id VARCHAR NOT NULL,
    puuid VARCHAR NOT NULL,
    team_id INTEGER,
    win BOOLEAN,
    team_win BOOLEAN,
    summoner_name VARCHAR,
    riot_id_game_name VARCHAR,
    riot_id_tagline VARCHAR,
    champion_name VARCHAR,
    lane VARCHAR,
    role VARCHAR,
    kills INTEGER,
    deaths INTEGER,
    assists INTEGER,
    gold_earned INTEGER,
    total_damage_dealt_to_champions INTEGER,
    vision_score INTEGER,
    total_minions_killed INTEGER,
    neutral_minions_killed INTEGER,
    PRIMARY KEY (match_id, puuid)
)
"""

RANK_SNAPSHOTS_DDL = """
CREATE SEQUENCE IF NOT EXISTS rank_snapshots_id_seq START 1;
CREATE TABLE IF NOT EXISTS rank_snapshots (
    id BIGINT PRIMARY KEY DEFAULT nextval('rank_snapshots_id_seq'),
    friend_id VARCHAR NOT NULL,
    queue_type VARCHAR NOT NULL,
    tier VARCHAR,
    division VARCHAR,
    lp INTEGER,
    wins INTEGER,
    losses INTEGER,
    created_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rank_snapshots_friend_queue
    ON rank_snapshots (friend_id, queue_type)
"""

SYNC_LOCK_DDL = """
CREATE TABLE IF NOT EXISTS sync_lock (
    id INTEGER PRIMARY KEY,
    locked_until TIMESTAMP
)
"""

INDEXES_DDL = """
CREATE INDEX IF NOT EXISTS idx_friend_matches_match ON friend_matches (match_id)
"""

SCHEMA_DDL: tuple[str, ...] = (
    FRIENDS_DDL,
    FRIEND_SYNC_STATE_DDL,
    MATCHES_DDL,
    FRIEND_MATCHES_DDL,
    MATCH_PARTICIPANTS_DDL,
    RANK_SNAPSHOTS_DDL,
    SYNC_LOCK_DDL,
    INDEXES_DDL,
)


# =============================================================================
# Helpers
# =============================================================================


def get_table_columns(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    """Retourne l'ensemble des noms de colonnes d'une table (vide si absente)."""
    try:
        cols = conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = 'main' AND table_name = ?",
            [table_name],
        ).fetchall()
        return {r[0] for r in cols} if cols else set()
    except duckdb.Error as e:
        logger.debug(f"Impossible de lire les colonnes de {table_name}: {e}")
        return set()


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    """Vérifie si une table existe dans le schéma main."""
    try:
        result = conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables "
            "WHERE table_schema = 'main' AND table_name = ?",
            [table_name],
        ).fetchone()
        return bool(result and result[0] > 0)
    except duckdb.Error:
        return False


def column_exists(conn: duckdb.DuckDBPyConnection, table_name: str, column_name: str) -> bool:
    return column_name in get_table_columns(conn, table_name)


def add_column_if_missing(
    conn: duckdb.DuckDBPyConnection,
    table_name: str,
    column_name: str,
    column_type: str,
    existing_cols: set[str] | None = None,
) -> bool:
    """Ajoute une colonne à une table si elle n'existe pas.

    Args:
        conn: Connexion DuckDB.
        table_name: Nom de la table.
        column_name: Nom de la colonne à ajouter.
        column_type: Type SQL de la colonne.
        existing_cols: Colonnes existantes (optionnel, évite une requête).

    Returns:
        True si la colonne a été ajoutée.
    """
    cols = existing_cols if existing_cols is not None else get_table_columns(conn, table_name)
    if column_name in cols:
        return False
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")
    logger.info(f"Ajout de la colonne {column_name} à {table_name}")
    return True


# =============================================================================
# Migrations
# =============================================================================


def ensure_match_participants_columns(conn: duckdb.DuckDBPyConnection) -> None:
    """Ajoute les colonnes apparues après la première version de match_participants."""
    cols = get_table_columns(conn, "match_participants")
    if not cols:
        return
    add_column_if_missing(conn, "match_participants", "team_win", "BOOLEAN", cols)


def ensure_sync_lock_table(conn: duckdb.DuckDBPyConnection) -> None:
    """Crée la table et la ligne du verrou global si absentes."""
    conn.execute(SYNC_LOCK_DDL)
    conn.execute(
        "INSERT INTO sync_lock (id, locked_until) VALUES (?, NULL) ON CONFLICT (id) DO NOTHING",
        [GLOBAL_LOCK_ROW_ID],
    )


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Crée toutes les tables manquantes puis applique les migrations de colonnes."""
    for ddl in SCHEMA_DDL:
        for statement in ddl.split(";"):
            if statement.strip():
                conn.execute(statement)
    ensure_match_participants_columns(conn)
    ensure_sync_lock_table(conn)
