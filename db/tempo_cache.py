"""Persistence for per-track tempo/key cache records."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from config import settings
from config.settings import (
    DETECTION_ALGORITHMS,
    MANUAL_SELECTION,
    PRIMARY_ALGORITHM,
    SECONDARY_ALGORITHM,
)
from db.migrations import ALGORITHM_COLUMN_STEMS, algorithm_columns, ensure_tempo_cache_tables

logger = logging.getLogger(__name__)

REVIEW_MATCH = "match"
REVIEW_MISMATCH = "mismatch"
REVIEW_STATUSES = (REVIEW_MATCH, REVIEW_MISMATCH)

SELECTION_VALUES = DETECTION_ALGORITHMS + (MANUAL_SELECTION,)

_ALGORITHM_COLUMNS = tuple(column for column, _type in algorithm_columns())
_COMMON_COLUMNS = (
    "isrc",
    "artist",
    "title",
    "tempo_manual",
    "key_manual",
    "scale_manual",
    "tempo_selected",
    "key_selected",
    "preview_candidates",
    "source",
    "error",
    "error_kind",
    "isrc_mismatch",
    "debug_txt",
)
# Review columns are only written through set_review/clear_review.
MERGEABLE_COLUMNS = frozenset(_COMMON_COLUMNS + _ALGORITHM_COLUMNS)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class AlgorithmValues:
    """Stored output of one detection algorithm."""

    tempo: float | None = None
    tempo_raw: float | None = None
    tempo_confidence: float | None = None
    key: str | None = None
    scale: str | None = None
    key_confidence: float | None = None

    @property
    def has_tempo(self) -> bool:
        return self.tempo is not None

    @property
    def has_key(self) -> bool:
        return bool(self.key)

    def as_dict(self) -> dict[str, Any]:
        return {stem: getattr(self, stem) for stem, _type in ALGORITHM_COLUMN_STEMS}


@dataclass(frozen=True)
class CacheRecord:
    track_id: str
    tempo_selected: str
    key_selected: str
    updated_at: datetime
    created_at: datetime
    tempo_pinned: bool = False
    key_pinned: bool = False
    isrc: str | None = None
    artist: str | None = None
    title: str | None = None
    algorithms: dict[str, AlgorithmValues] = field(default_factory=dict)
    tempo_manual: float | None = None
    key_manual: str | None = None
    scale_manual: str | None = None
    preview_candidates: list[dict[str, Any]] = field(default_factory=list)
    source: str | None = None
    error: str | None = None
    error_kind: str | None = None
    isrc_mismatch_detected: bool = False
    mismatch_review_status: str | None = None
    mismatch_reviewed_by: str | None = None
    mismatch_reviewed_at: datetime | None = None
    debug_txt: str | None = None

    @property
    def isrc_mismatch(self) -> bool:
        """Mismatch flag as consumers see it; a human review always wins over the automatic flag."""
        if self.mismatch_review_status == REVIEW_MATCH:
            return False
        if self.mismatch_review_status == REVIEW_MISMATCH:
            return True
        return self.isrc_mismatch_detected

    def algorithm(self, name: str) -> AlgorithmValues:
        return self.algorithms.get(name) or AlgorithmValues()

    @property
    def primary(self) -> AlgorithmValues:
        return self.algorithm(PRIMARY_ALGORITHM)

    @property
    def secondary(self) -> AlgorithmValues:
        return self.algorithm(SECONDARY_ALGORITHM)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.updated_at).total_seconds()


def _row_to_record(row: sqlite3.Row) -> CacheRecord:
    data = dict(row)
    algorithms = {
        algorithm: AlgorithmValues(
            **{stem: data.get(f"{stem}_{algorithm}") for stem, _type in ALGORITHM_COLUMN_STEMS}
        )
        for algorithm in DETECTION_ALGORITHMS
    }
    try:
        candidates = json.loads(data.get("preview_candidates") or "[]")
    except json.JSONDecodeError:
        logger.warning("[TEMPO_CACHE] track_id=%s preview_candidates=invalid_json", data["track_id"])
        candidates = []
    return CacheRecord(
        track_id=str(data["track_id"]),
        isrc=data.get("isrc"),
        artist=data.get("artist"),
        title=data.get("title"),
        algorithms=algorithms,
        tempo_manual=data.get("tempo_manual"),
        key_manual=data.get("key_manual"),
        scale_manual=data.get("scale_manual"),
        tempo_selected=str(data.get("tempo_selected") or PRIMARY_ALGORITHM),
        key_selected=str(data.get("key_selected") or PRIMARY_ALGORITHM),
        tempo_pinned=bool(data.get("tempo_pinned")),
        key_pinned=bool(data.get("key_pinned")),
        preview_candidates=candidates if isinstance(candidates, list) else [],
        source=data.get("source"),
        error=data.get("error"),
        error_kind=data.get("error_kind"),
        isrc_mismatch_detected=bool(data.get("isrc_mismatch")),
        mismatch_review_status=data.get("mismatch_review_status"),
        mismatch_reviewed_by=data.get("mismatch_reviewed_by"),
        mismatch_reviewed_at=_from_iso(data.get("mismatch_reviewed_at")),
        debug_txt=data.get("debug_txt"),
        created_at=_from_iso(data.get("created_at")) or utc_now(),
        updated_at=_from_iso(data.get("updated_at")) or utc_now(),
    )


def default_selection(values: dict[str, Any], kind: str) -> str:
    """Automatic selection: primary if it has a value, else secondary, else manual."""
    stem, manual_column = ("tempo", "tempo_manual") if kind == "tempo" else ("key", "key_manual")
    for algorithm in DETECTION_ALGORITHMS:
        if values.get(f"{stem}_{algorithm}") not in (None, ""):
            return algorithm
    if values.get(manual_column) not in (None, ""):
        return MANUAL_SELECTION
    return PRIMARY_ALGORITHM


def _encode(column: str, value: Any) -> Any:
    if column == "preview_candidates":
        return json.dumps(list(value or []), sort_keys=True)
    if column == "isrc_mismatch":
        return 1 if value else 0
    if column in {"tempo_selected", "key_selected"} and value not in SELECTION_VALUES:
        raise ValueError(f"{column} must be one of {', '.join(SELECTION_VALUES)}")
    return value


class TempoCacheStore:
    """SQLite-backed store of tempo/key records keyed by catalog track id."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or settings.DB_PATH
        self._init_lock = threading.Lock()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            self._ensure_initialized(conn)
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _ensure_initialized(self, conn: sqlite3.Connection) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            ensure_tempo_cache_tables(conn)
            self._initialized = True

    def ensure_schema(self) -> None:
        conn = self._connect()
        conn.close()

    def get(self, track_id: str) -> CacheRecord | None:
        tid = (track_id or "").strip()
        if not tid:
            return None
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM track_tempo_cache WHERE track_id=?", (tid,))
            row = cur.fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def get_many(self, track_ids: Iterable[str]) -> dict[str, CacheRecord]:
        ids = sorted({(tid or "").strip() for tid in track_ids if (tid or "").strip()})
        if not ids:
            return {}
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ",".join("?" for _ in ids)
            cur.execute(f"SELECT * FROM track_tempo_cache WHERE track_id IN ({placeholders})", ids)
            return {str(row["track_id"]): _row_to_record(row) for row in cur.fetchall()}
        finally:
            conn.close()

    def get_batch(self, isrcs: Iterable[str]) -> dict[str, CacheRecord]:
        """Return at most one record per ISRC, the most recently updated one, in a single query."""
        keys = sorted({(isrc or "").strip().upper() for isrc in isrcs if (isrc or "").strip()})
        if not keys:
            return {}
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ",".join("?" for _ in keys)
            cur.execute(
                f"""
                SELECT * FROM track_tempo_cache
                WHERE isrc IN ({placeholders})
                ORDER BY updated_at DESC, track_id ASC
                """,
                keys,
            )
            result: dict[str, CacheRecord] = {}
            for row in cur.fetchall():
                isrc = str(row["isrc"])
                if isrc not in result:
                    result[isrc] = _row_to_record(row)
            return result
        finally:
            conn.close()

    def find_by_isrc(self, isrc: str | None) -> CacheRecord | None:
        if not isrc:
            return None
        return self.get_batch([isrc]).get(isrc.strip().upper())

    def merge(
        self,
        track_id: str,
        update: dict[str, Any],
        *,
        now: datetime | None = None,
        touch: bool = True,
    ) -> CacheRecord:
        """Apply only the fields present in `update`, creating the record when absent."""
        tid = (track_id or "").strip()
        if not tid:
            raise ValueError("track_id is required")
        unknown = set(update) - MERGEABLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown cache fields: {', '.join(sorted(unknown))}")
        stamp = _to_iso(now or utc_now())
        encoded = {column: _encode(column, value) for column, value in update.items()}

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("SELECT * FROM track_tempo_cache WHERE track_id=?", (tid,))
            existing = cur.fetchone()
            merged = dict(existing) if existing is not None else {}
            merged.update(encoded)
            # An explicit selection pins it; otherwise it follows the stored values.
            for kind in ("tempo", "key"):
                selected, pinned = f"{kind}_selected", f"{kind}_pinned"
                if selected in encoded:
                    encoded[pinned] = 1
                elif not merged.get(pinned):
                    automatic = default_selection(merged, kind)
                    if existing is None or existing[selected] != automatic:
                        encoded[selected] = automatic
            if existing is None:
                values = dict(encoded)
                values["track_id"] = tid
                values["created_at"] = stamp
                values["updated_at"] = stamp
                columns = sorted(values)
                cur.execute(
                    f"INSERT INTO track_tempo_cache ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [values[column] for column in columns],
                )
                logger.info("[TEMPO_CACHE] track_id=%s action=insert fields=%s", tid, len(encoded))
            else:
                values = dict(encoded)
                if touch:
                    values["updated_at"] = stamp
                if values:
                    columns = sorted(values)
                    assignments = ", ".join(f"{column}=?" for column in columns)
                    cur.execute(
                        f"UPDATE track_tempo_cache SET {assignments} WHERE track_id=?",
                        [values[column] for column in columns] + [tid],
                    )
                logger.info("[TEMPO_CACHE] track_id=%s action=merge fields=%s", tid, len(encoded))
            cur.execute("SELECT * FROM track_tempo_cache WHERE track_id=?", (tid,))
            row = cur.fetchone()
            conn.commit()
            return _row_to_record(row)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete(self, track_ids: Iterable[str]) -> int:
        ids = sorted({(tid or "").strip() for tid in track_ids if (tid or "").strip()})
        if not ids:
            return 0
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ",".join("?" for _ in ids)
            cur.execute(f"DELETE FROM track_tempo_cache WHERE track_id IN ({placeholders})", ids)
            deleted = int(cur.rowcount or 0)
            conn.commit()
            logger.info("[TEMPO_CACHE] action=delete requested=%s deleted=%s", len(ids), deleted)
            return deleted
        finally:
            conn.close()

    def list_mismatches(self, limit: int = 200) -> list[CacheRecord]:
        """Records with an automatic mismatch flag or any human review, newest first."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM track_tempo_cache
                WHERE isrc_mismatch=1 OR mismatch_review_status IS NOT NULL
                ORDER BY updated_at DESC, track_id ASC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            )
            return [_row_to_record(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def set_review(
        self,
        track_id: str,
        status: str,
        reviewer: str | None,
        reviewed_at: datetime | None = None,
    ) -> CacheRecord | None:
        if status not in REVIEW_STATUSES:
            raise ValueError(f"review status must be one of {', '.join(REVIEW_STATUSES)}")
        return self._write_review(
            track_id,
            status,
            reviewer,
            _to_iso(reviewed_at or utc_now()),
        )

    def clear_review(self, track_id: str) -> CacheRecord | None:
        return self._write_review(track_id, None, None, None)

    def _write_review(
        self,
        track_id: str,
        status: str | None,
        reviewer: str | None,
        reviewed_at: str | None,
    ) -> CacheRecord | None:
        tid = (track_id or "").strip()
        if not tid:
            raise ValueError("track_id is required")
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE track_tempo_cache
                SET mismatch_review_status=?, mismatch_reviewed_by=?, mismatch_reviewed_at=?
                WHERE track_id=?
                """,
                (status, reviewer, reviewed_at, tid),
            )
            if not cur.rowcount:
                conn.commit()
                return None
            cur.execute("SELECT * FROM track_tempo_cache WHERE track_id=?", (tid,))
            row = cur.fetchone()
            conn.commit()
            logger.info("[TEMPO_CACHE] track_id=%s action=review status=%s by=%s", tid, status, reviewer)
            return _row_to_record(row)
        finally:
            conn.close()
