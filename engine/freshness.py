"""Read-time freshness rules for cached records."""

from __future__ import annotations

from datetime import datetime

from config import settings
from db.tempo_cache import CacheRecord
from engine.errors import DetectionUnavailable, NoPreviewFound
from engine.selection import select

ERROR_NO_PREVIEW = NoPreviewFound.kind
ERROR_DETECTION_UNAVAILABLE = DetectionUnavailable.kind


def is_fresh(record: CacheRecord, now: datetime, ttl_seconds: int | None = None) -> bool:
    """True when the record can be served without recomputation."""
    ttl = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    if record.error or record.isrc_mismatch:
        return False
    if select(record).tempo is None:
        return False
    return record.age_seconds(now) < ttl


def retry_after_seconds(record: CacheRecord, now: datetime) -> int:
    """Seconds until a failed or flagged record becomes eligible for recomputation."""
    if record.error_kind == ERROR_DETECTION_UNAVAILABLE:
        window = settings.DETECTION_RETRY_SECONDS
    else:
        window = settings.FAILURE_RETRY_SECONDS
    return max(0, int(window - record.age_seconds(now)))


def needs_refresh(
    record: CacheRecord | None,
    now: datetime,
    ttl_seconds: int | None = None,
) -> bool:
    if record is None:
        return True
    if is_fresh(record, now, ttl_seconds):
        return False
    if record.error or record.isrc_mismatch:
        # A human-confirmed mismatch stays suppressed until the TTL lapses.
        if record.mismatch_review_status and not record.error:
            ttl = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
            return record.age_seconds(now) >= ttl
        return retry_after_seconds(record, now) <= 0
    return True
