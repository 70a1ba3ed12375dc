"""Identity-mismatch detection and the human review workflow."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from config.settings import MISMATCH_LIST_LIMIT
from db.tempo_cache import REVIEW_MATCH, REVIEW_MISMATCH, CacheRecord, TempoCacheStore, utc_now
from engine.context import CallerContext
from engine.errors import ValidationError
from engine.identifiers import TrackIdentifiers, normalize_isrc
from engine.text_matching import artists_match, titles_match
from previews.providers.base import PreviewCandidate
from previews.providers.catalog import CatalogPreviewProvider

logger = logging.getLogger(__name__)

# Re-resolves one flagged record by its ISRC; returns a per-track outcome with a "status" of
# resolved, skipped or failed.
Recompute = Callable[[CacheRecord], Awaitable[dict[str, Any]]]

OUTCOME_RESOLVED = "resolved"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


class ReviewState(str, Enum):
    UNFLAGGED = "unflagged"
    FLAGGED_PENDING = "flagged_pending"
    CONFIRMED_MATCH = "confirmed_match"
    CONFIRMED_MISMATCH = "confirmed_mismatch"


class ReviewAction(str, Enum):
    CONFIRM_MATCH = "confirm_match"
    CONFIRM_MISMATCH = "confirm_mismatch"


_ACTION_STATUS = {
    ReviewAction.CONFIRM_MATCH: REVIEW_MATCH,
    ReviewAction.CONFIRM_MISMATCH: REVIEW_MISMATCH,
}


def detect_mismatch(ids: TrackIdentifiers, candidate: PreviewCandidate | None) -> bool:
    """True when the winning excerpt's detected identity disagrees with the request.

    ISRCs are compared when both sides have one; otherwise title and artist are
    compared loosely. The catalog's own preview is never flagged.
    """
    if candidate is None or not candidate.success:
        return False
    if candidate.provider == CatalogPreviewProvider.name:
        return False
    detected_isrc = normalize_isrc(candidate.detected_isrc)
    if ids.isrc and detected_isrc:
        return detected_isrc != ids.isrc
    if not candidate.detected_title and not candidate.detected_artist:
        return False
    return not (
        titles_match(ids.title, candidate.detected_title)
        and artists_match(ids.artists, candidate.detected_artist)
    )


def review_state(record: CacheRecord) -> ReviewState:
    if record.mismatch_review_status == REVIEW_MATCH:
        return ReviewState.CONFIRMED_MATCH
    if record.mismatch_review_status == REVIEW_MISMATCH:
        return ReviewState.CONFIRMED_MISMATCH
    if record.isrc_mismatch_detected:
        return ReviewState.FLAGGED_PENDING
    return ReviewState.UNFLAGGED


def parse_action(value: str | None) -> ReviewAction:
    try:
        return ReviewAction(str(value or "").strip())
    except ValueError:
        raise ValidationError("action must be confirm_match or confirm_mismatch") from None


def review_summary(record: CacheRecord) -> dict:
    return {
        "track_id": record.track_id,
        "isrc": record.isrc,
        "artist": record.artist,
        "title": record.title,
        "source": record.source,
        "preview_candidates": record.preview_candidates,
        "isrc_mismatch": record.isrc_mismatch,
        "isrc_mismatch_detected": record.isrc_mismatch_detected,
        "review_state": review_state(record).value,
        "reviewed_by": record.mismatch_reviewed_by,
        "reviewed_at": record.mismatch_reviewed_at.isoformat() if record.mismatch_reviewed_at else None,
        "updated_at": record.updated_at.isoformat(),
    }


class MismatchReviewer:
    """Admin-driven transitions of the review state; decisions are sticky across re-resolution."""

    def __init__(
        self,
        store: TempoCacheStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        recompute: Recompute | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.recompute = recompute

    async def review(self, track_id: str, action: str, ctx: CallerContext) -> CacheRecord:
        ctx.require_admin("mismatch review")
        tid = (track_id or "").strip()
        if not tid:
            raise ValidationError("trackId is required")
        parsed = parse_action(action)
        record = await asyncio.to_thread(
            self.store.set_review,
            tid,
            _ACTION_STATUS[parsed],
            ctx.user_id,
            self.clock(),
        )
        if record is None:
            raise ValidationError(f"no cache record for track {tid}")
        logger.info("[REVIEW] track_id=%s action=%s by=%s", tid, parsed.value, ctx.user_id)
        return record

    async def clear(self, track_id: str, ctx: CallerContext) -> CacheRecord:
        """Out-of-band reset back to the automatic flag."""
        ctx.require_super_admin("clearing a mismatch review")
        tid = (track_id or "").strip()
        if not tid:
            raise ValidationError("trackId is required")
        record = await asyncio.to_thread(self.store.clear_review, tid)
        if record is None:
            raise ValidationError(f"no cache record for track {tid}")
        logger.info("[REVIEW] track_id=%s action=clear by=%s", tid, ctx.user_id)
        return record

    async def listing(self, ctx: CallerContext, limit: int = MISMATCH_LIST_LIMIT) -> list[CacheRecord]:
        ctx.require_admin("mismatch listing")
        bounded = max(1, min(int(limit), MISMATCH_LIST_LIMIT))
        return await asyncio.to_thread(self.store.list_mismatches, bounded)

    async def pending(self, ctx: CallerContext, limit: int = MISMATCH_LIST_LIMIT) -> list[CacheRecord]:
        records = await self.listing(ctx, limit)
        return [record for record in records if review_state(record) is ReviewState.FLAGGED_PENDING]

    async def resolve_pending(self, ctx: CallerContext, limit: int = MISMATCH_LIST_LIMIT) -> dict[str, Any]:
        """Re-resolve every flagged, unreviewed record by ISRC and confirm the ones that now match.

        Records are processed one at a time. A confirmed record is reviewed as a
        match by the calling admin.
        """
        ctx.require_admin("bulk mismatch resolution")
        if self.recompute is None:
            raise ValidationError("bulk mismatch resolution is not configured")
        records = await self.pending(ctx, limit)
        results: list[dict[str, Any]] = []
        resolved = 0
        skipped = 0
        for record in records:
            outcome = await self.recompute(record)
            if outcome["status"] == OUTCOME_RESOLVED:
                await asyncio.to_thread(
                    self.store.set_review,
                    record.track_id,
                    REVIEW_MATCH,
                    ctx.user_id,
                    self.clock(),
                )
                resolved += 1
            elif outcome["status"] == OUTCOME_SKIPPED:
                skipped += 1
            results.append(outcome)
        logger.info(
            "[REVIEW] resolve_all processed=%s resolved=%s skipped=%s by=%s",
            len(records),
            resolved,
            skipped,
            ctx.user_id,
        )
        return {"processed": len(records), "resolved": resolved, "skipped": skipped, "results": results}
