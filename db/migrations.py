"""SQLite migrations for the tempo/key cache."""

from __future__ import annotations

import sqlite3

from config.settings import DETECTION_ALGORITHMS

# Per-algorithm column stems; each is suffixed with `_<algorithm>`.
ALGORITHM_COLUMN_STEMS = (
    ("tempo", "REAL"),
    ("tempo_raw", "REAL"),
    ("tempo_confidence", "REAL"),
    ("key", "TEXT"),
    ("scale", "TEXT"),
    ("key_confidence", "REAL"),
)

# Columns introduced after the first release of the table.
ADDED_COLUMNS = (
    ("tempo_pinned", "INTEGER NOT NULL DEFAULT 0"),
    ("key_pinned", "INTEGER NOT NULL DEFAULT 0"),
)


def algorithm_columns(algorithms: tuple[str, ...] = DETECTION_ALGORITHMS) -> list[tuple[str, str]]:
    return [
        (f"{stem}_{algorithm}", sql_type)
        for algorithm in algorithms
        for stem, sql_type in ALGORITHM_COLUMN_STEMS
    ]


def _existing_columns(cur: sqlite3.Cursor, table: str) -> set[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return {str(row[1]) for row in cur.fetchall()}


def ensure_tempo_cache_tables(conn: sqlite3.Connection) -> None:
    """Ensure the tempo cache table, its per-algorithm columns and indexes exist.

    Runs as one write transaction so concurrent first connections to a new
    file see either no table or the fully migrated one.
    """
    cur = conn.cursor()
    cur.execute("BEGIN IMMEDIATE")
    try:
        _migrate(cur)
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def _migrate(cur: sqlite3.Cursor) -> None:
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS track_tempo_cache (
            track_id TEXT PRIMARY KEY,
            isrc TEXT,
            artist TEXT,
            title TEXT,
            tempo_manual REAL,
            key_manual TEXT,
            scale_manual TEXT,
            tempo_selected TEXT NOT NULL,
            key_selected TEXT NOT NULL,
            tempo_pinned INTEGER NOT NULL DEFAULT 0,
            key_pinned INTEGER NOT NULL DEFAULT 0,
            preview_candidates TEXT,
            source TEXT,
            error TEXT,
            error_kind TEXT,
            isrc_mismatch INTEGER NOT NULL DEFAULT 0,
            mismatch_review_status TEXT,
            mismatch_reviewed_by TEXT,
            mismatch_reviewed_at TEXT,
            debug_txt TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    # Detector columns are added incrementally so a new algorithm needs no rebuild.
    existing = _existing_columns(cur, "track_tempo_cache")
    for column, sql_type in algorithm_columns() + list(ADDED_COLUMNS):
        if column not in existing:
            cur.execute(f"ALTER TABLE track_tempo_cache ADD COLUMN {column} {sql_type}")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_track_tempo_cache_isrc "
        "ON track_tempo_cache (isrc, updated_at DESC)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_track_tempo_cache_mismatch "
        "ON track_tempo_cache (isrc_mismatch, mismatch_review_status)"
    )
