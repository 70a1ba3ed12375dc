"""Caller-facing result shapes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from db.tempo_cache import CacheRecord
from engine.freshness import retry_after_seconds
from engine.mismatch import ReviewState, review_state
from engine.selection import select

STATUS_OK = "ok"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_SUPPRESSED = "suppressed"


def empty_response(track_id: str | None = None, *, isrc: str | None = None, error: str | None = None, status: str = STATUS_PENDING) -> dict[str, Any]:
    """Shape for a track with no cached record."""
    return {
        "track_id": track_id,
        "isrc": isrc,
        "tempo": None,
        "tempo_raw": None,
        "tempo_confidence": None,
        "key": None,
        "scale": None,
        "key_confidence": None,
        "source": None,
        "cached": False,
        "status": status,
        "retryable": status != STATUS_OK,
        "retry_after": None,
        "error": error,
    }


def _status(record: CacheRecord, tempo: float | None, suppressed: bool) -> str:
    if suppressed:
        return STATUS_SUPPRESSED
    if record.error:
        return STATUS_FAILED
    if tempo is None:
        return STATUS_PENDING
    return STATUS_OK


def build_response(record: CacheRecord, *, cached: bool, now: datetime) -> dict[str, Any]:
    selection = select(record)
    status = _status(record, selection.tempo, selection.suppressed)
    state = review_state(record)
    retry_after = None
    if status == STATUS_FAILED or (status == STATUS_SUPPRESSED and state is ReviewState.FLAGGED_PENDING):
        retry_after = retry_after_seconds(record, now)
    return {
        "track_id": record.track_id,
        "isrc": record.isrc,
        "artist": record.artist,
        "title": record.title,
        "tempo": selection.tempo,
        "tempo_raw": selection.tempo_raw,
        "tempo_confidence": selection.tempo_confidence,
        "key": selection.key,
        "scale": selection.scale,
        "key_confidence": selection.key_confidence,
        "tempo_source": selection.tempo_source,
        "key_source": selection.key_source,
        "source": record.source,
        "cached": cached,
        "status": status,
        "retryable": status in (STATUS_FAILED, STATUS_PENDING),
        "retry_after": retry_after,
        "error": selection.error,
        "tempo_selected": record.tempo_selected,
        "key_selected": record.key_selected,
        "algorithms": {name: values.as_dict() for name, values in record.algorithms.items()},
        "manual": {
            "tempo": record.tempo_manual,
            "key": record.key_manual,
            "scale": record.scale_manual,
        },
        "preview_candidates": record.preview_candidates,
        "isrc_mismatch": record.isrc_mismatch,
        "review_state": state.value,
        "updated_at": record.updated_at.isoformat(),
    }
