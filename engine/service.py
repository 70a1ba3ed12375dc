"""Tempo/key resolution with caching, dedup and review-aware reads."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

import requests

from config import settings
from db.tempo_cache import (
    MANUAL_SELECTION,
    SELECTION_VALUES,
    CacheRecord,
    TempoCacheStore,
    utc_now,
)
from detection.client import DetectionBackend
from detection.results import DetectionResult, parse_detection_payload
from detection.stream import BatchResultStream, record_index
from engine.context import CallerContext
from engine.errors import DetectionUnavailable, NoPreviewFound, ValidationError
from engine.freshness import is_fresh, needs_refresh
from engine.identifiers import TrackIdentifiers, extract_identifiers, normalize_isrc
from engine.inflight import InFlightRegistry
from engine.mismatch import (
    OUTCOME_FAILED,
    OUTCOME_RESOLVED,
    OUTCOME_SKIPPED,
    MismatchReviewer,
    detect_mismatch,
    review_summary,
)
from engine.normalize import as_float, normalize_key, normalize_scale
from engine.responses import STATUS_FAILED, build_response, empty_response
from previews.country import normalize_country
from previews.providers import ISRC_KEYED_PROVIDERS
from previews.providers.base import PreviewCandidate
from previews.resolver import PreviewResolution, PreviewResolver

logger = logging.getLogger(__name__)

TrackLookup = Callable[[str], dict[str, Any] | None]
TrackFinder = Callable[..., str | None]

# Catalog failures are reported to the caller but never cached.
_CATALOG_ERRORS = (RuntimeError, requests.RequestException)


@dataclass
class StreamingBatchPlan:
    urls: list[str] = field(default_factory=list)
    index_to_track_id: dict[int, str] = field(default_factory=dict)
    preview_meta: dict[str, dict[str, Any]] = field(default_factory=dict)
    immediate_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    batch_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class _PreparedPreview:
    """A resolved excerpt whose analysis is left to a streaming batch."""

    response: dict[str, Any]
    url: str
    meta: dict[str, Any]


@dataclass(frozen=True)
class _BulkOutcome:
    response: dict[str, Any]
    outcome: dict[str, Any]


def _response_of(outcome: Any) -> dict[str, Any]:
    """Caller-facing response from whatever the in-flight run for a track produced."""
    return outcome if isinstance(outcome, dict) else outcome.response


def _record_identifiers(record: CacheRecord) -> TrackIdentifiers:
    return TrackIdentifiers(
        track_id=record.track_id,
        isrc=record.isrc,
        title=record.title or "",
        artists=tuple(part.strip() for part in (record.artist or "").split(",") if part.strip()),
    )


def _clean_ids(values: Any, *, limit: int, name: str) -> list[str]:
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError(f"{name} must be a non-empty array")
    if len(values) > limit:
        raise ValidationError(f"{name} must contain at most {limit} entries")
    cleaned: list[str] = []
    for value in values:
        text = str(value or "").strip()
        if text and text not in cleaned:
            cleaned.append(text)
    if not cleaned:
        raise ValidationError(f"{name} must be a non-empty array")
    return cleaned


def _identity_update(ids: TrackIdentifiers) -> dict[str, Any]:
    return {"isrc": ids.isrc, "artist": ids.artist_display or None, "title": ids.title or None}


def _provenance_update(resolution: PreviewResolution) -> dict[str, Any]:
    return {
        "preview_candidates": [candidate.as_dict() for candidate in resolution.candidates],
        "source": resolution.source,
    }


def _failure_update(exc: NoPreviewFound | DetectionUnavailable) -> dict[str, Any]:
    return {"error": str(exc), "error_kind": exc.kind}


def _results_update(results: Iterable[DetectionResult]) -> dict[str, Any]:
    update: dict[str, Any] = {}
    for result in results:
        update.update(result.cache_update())
    return update


class TempoResolutionService:
    def __init__(
        self,
        store: TempoCacheStore,
        resolver: PreviewResolver,
        backend: DetectionBackend,
        *,
        track_lookup: TrackLookup | None = None,
        track_finder: TrackFinder | None = None,
        clock: Callable[[], datetime] = utc_now,
        detection_timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.backend = backend
        self.track_lookup = track_lookup
        self.track_finder = track_finder
        self.clock = clock
        self.detection_timeout_seconds = detection_timeout_seconds or settings.DETECTION_TIMEOUT_SECONDS
        # Every per-track computation runs under the track id in this one registry.
        self.inflight = InFlightRegistry()
        self.reviewer = MismatchReviewer(store, clock=clock, recompute=self._recompute_pending)

    # reads

    async def resolve(self, track_id: str, *, country: str | None = None) -> dict[str, Any]:
        tid = str(track_id or "").strip()
        if not tid:
            raise ValidationError("trackId is required")
        record = await asyncio.to_thread(self.store.get, tid)
        now = self.clock()
        if record is not None and not needs_refresh(record, now):
            return build_response(record, cached=True, now=now)
        outcome = await self.inflight.run(tid, lambda: self._refresh_by_id(tid, normalize_country(country)))
        return _response_of(outcome)

    async def resolve_track(self, track: dict[str, Any], *, country: str | None = None) -> dict[str, Any]:
        ids = extract_identifiers(track)
        record = await asyncio.to_thread(self.store.get, ids.track_id)
        now = self.clock()
        if record is not None and not needs_refresh(record, now):
            return build_response(record, cached=True, now=now)
        outcome = await self.inflight.run(ids.track_id, lambda: self._refresh(ids, normalize_country(country)))
        return _response_of(outcome)

    async def resolve_many(self, track_ids: Any) -> dict[str, dict[str, Any]]:
        """Cache-only read for many tracks; nothing is computed."""
        ids = _clean_ids(track_ids, limit=settings.TRACK_BATCH_LIMIT, name="trackIds")
        records = await asyncio.to_thread(self.store.get_many, ids)
        now = self.clock()
        results: dict[str, dict[str, Any]] = {}
        for tid in ids:
            record = records.get(tid)
            if record is not None and not needs_refresh(record, now):
                results[tid] = build_response(record, cached=True, now=now)
            else:
                results[tid] = empty_response(tid, isrc=record.isrc if record else None)
        return results

    async def batch_by_isrc(self, isrcs: Any) -> dict[str, dict[str, Any]]:
        """Cache-only read by ISRC; results are keyed by the ISRCs exactly as requested."""
        requested = _clean_ids(isrcs, limit=settings.ISRC_BATCH_LIMIT, name="isrcs")
        normalized = {key: normalize_isrc(key) for key in requested}
        records = await asyncio.to_thread(self.store.get_batch, [isrc for isrc in normalized.values() if isrc])
        now = self.clock()
        return {
            key: build_response(records[isrc], cached=True, now=now)
            if isrc in records
            else {"isrc": isrc, "cached": False}
            for key, isrc in normalized.items()
        }

    async def compute_by_isrc(
        self,
        *,
        isrc: str | None = None,
        title: str | None = None,
        artist: str | None = None,
        track_id: str | None = None,
        country: str | None = None,
    ) -> dict[str, Any]:
        tid = str(track_id or "").strip()
        if not tid:
            if not normalize_isrc(isrc) and not (str(title or "").strip() and str(artist or "").strip()):
                raise ValidationError("isrc or title and artist are required")
            if self.track_finder is None:
                raise ValidationError("catalog search is not configured")
            try:
                found = await asyncio.to_thread(self.track_finder, isrc=isrc, title=title, artist=artist)
            except _CATALOG_ERRORS as exc:
                logger.warning("[TEMPO] catalog search failed isrc=%s error=%s", isrc, exc)
                return empty_response(None, isrc=normalize_isrc(isrc), error=str(exc), status=STATUS_FAILED)
            if not found:
                response = empty_response(None, isrc=normalize_isrc(isrc), error="Track not found in catalog", status=STATUS_FAILED)
                response["retryable"] = False
                return response
            tid = found
        return await self.resolve(tid, country=country)

    # pipeline

    async def _refresh_by_id(self, track_id: str, country: str) -> dict[str, Any]:
        record = await asyncio.to_thread(self.store.get, track_id)
        now = self.clock()
        if record is not None and not needs_refresh(record, now):
            return build_response(record, cached=True, now=now)
        if self.track_lookup is None:
            raise ValidationError("catalog lookup is not configured")
        try:
            track = await asyncio.to_thread(self.track_lookup, track_id)
        except _CATALOG_ERRORS as exc:
            logger.warning("[TEMPO] track_id=%s catalog lookup failed error=%s", track_id, exc)
            if record is not None:
                response = build_response(record, cached=True, now=now)
                response["error"] = response["error"] or str(exc)
                return response
            return empty_response(track_id, error=f"catalog lookup failed: {exc}", status=STATUS_FAILED)
        if not track:
            raise ValidationError(f"track {track_id} not found in catalog")
        ids = extract_identifiers(track)
        return await self._run_pipeline(ids, country)

    async def _refresh(self, ids: TrackIdentifiers, country: str) -> dict[str, Any]:
        record = await asyncio.to_thread(self.store.get, ids.track_id)
        now = self.clock()
        if record is not None and not needs_refresh(record, now):
            return build_response(record, cached=True, now=now)
        return await self._run_pipeline(ids, country)

    async def _reuse_by_isrc(self, ids: TrackIdentifiers, now: datetime) -> CacheRecord | None:
        """Copy a fresh result from another catalog entry of the same recording."""
        if not ids.isrc:
            return None
        donor = await asyncio.to_thread(self.store.find_by_isrc, ids.isrc)
        if donor is None or donor.track_id == ids.track_id or not is_fresh(donor, now):
            return None
        update = _identity_update(ids)
        for name, values in donor.algorithms.items():
            for stem, value in values.as_dict().items():
                update[f"{stem}_{name}"] = value
        update.update(
            {
                "preview_candidates": donor.preview_candidates,
                "source": donor.source,
                "error": None,
                "error_kind": None,
                "isrc_mismatch": False,
            }
        )
        logger.info("[TEMPO] track_id=%s reused isrc=%s from=%s", ids.track_id, ids.isrc, donor.track_id)
        return await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)

    async def _analyze(self, url: str) -> list[DetectionResult]:
        try:
            results = await asyncio.wait_for(
                asyncio.to_thread(self.backend.analyze, url),
                timeout=self.detection_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise DetectionUnavailable("detection service timed out") from exc
        if not results:
            raise DetectionUnavailable("detection service returned no tempo or key")
        return results

    async def _run_pipeline(self, ids: TrackIdentifiers, country: str) -> dict[str, Any]:
        now = self.clock()
        reused = await self._reuse_by_isrc(ids, now)
        if reused is not None:
            return build_response(reused, cached=True, now=now)

        resolution = await self.resolver.resolve(ids, country=country)
        update = _identity_update(ids)
        update.update(_provenance_update(resolution))

        if not resolution.found:
            update.update(_failure_update(NoPreviewFound()))
            update["isrc_mismatch"] = False
            record = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
            logger.info("[TEMPO] track_id=%s status=no_preview attempts=%s", ids.track_id, len(resolution.candidates))
            return build_response(record, cached=False, now=now)

        mismatch = detect_mismatch(ids, resolution.winner)
        update["isrc_mismatch"] = mismatch
        try:
            results = await self._analyze(str(resolution.url))
        except DetectionUnavailable as exc:
            update.update(_failure_update(exc))
            record = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
            logger.warning("[TEMPO] track_id=%s status=detection_unavailable error=%s", ids.track_id, exc)
            return build_response(record, cached=False, now=now)

        update.update(_results_update(results))
        update.update({"error": None, "error_kind": None})
        record = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
        logger.info(
            "[TEMPO] track_id=%s status=computed source=%s algorithms=%s mismatch=%s",
            ids.track_id,
            resolution.source,
            ",".join(result.algorithm for result in results),
            mismatch,
        )
        return build_response(record, cached=False, now=now)

    # writes

    async def _preview_meta_update(self, track_id: str, meta: dict[str, Any]) -> dict[str, Any]:
        """Provenance fields from a client-supplied preview description."""
        update: dict[str, Any] = {}
        source = meta.get("source")
        if isinstance(source, str) and source.strip():
            update["source"] = source.strip()
        raw_candidates = meta.get("candidates")
        if isinstance(raw_candidates, list):
            update["preview_candidates"] = [
                PreviewCandidate.from_dict(item).as_dict() for item in raw_candidates if isinstance(item, dict)
            ]
        if isinstance(meta.get("isrcMismatch"), bool):
            update["isrc_mismatch"] = meta["isrcMismatch"]
        elif meta.get("detectedIsrc"):
            existing = await asyncio.to_thread(self.store.get, track_id)
            if existing is not None:
                winner = PreviewCandidate(
                    provider=update.get("source") or existing.source or "",
                    success=True,
                    url=meta.get("url"),
                    detected_isrc=meta.get("detectedIsrc"),
                    detected_title=meta.get("detectedTitle"),
                    detected_artist=meta.get("detectedArtist"),
                )
                update["isrc_mismatch"] = detect_mismatch(_record_identifiers(existing), winner)
        return update

    async def ingest(self, payload: Any) -> dict[str, Any]:
        """Store a detection result computed elsewhere (e.g. by a streaming client)."""
        if not isinstance(payload, dict):
            raise ValidationError("body must be an object")
        track_id = payload.get("trackId")
        if not isinstance(track_id, str) or not track_id.strip():
            raise ValidationError("trackId is required")
        result = payload.get("result")
        if not isinstance(result, dict):
            raise ValidationError("result is required")
        meta = payload.get("previewMeta")
        if not isinstance(meta, dict) or not isinstance(meta.get("source"), str) or not meta["source"].strip():
            raise ValidationError("previewMeta with source is required")

        results = parse_detection_payload(result)
        if not results:
            raise ValidationError("result has no tempo or key values")
        tid = track_id.strip()

        update = await self._preview_meta_update(tid, meta)
        update.update({"error": None, "error_kind": None})
        update.update(_results_update(results))
        now = self.clock()
        record = await asyncio.to_thread(self.store.merge, tid, update, now=now)
        logger.info("[TEMPO] track_id=%s status=ingested algorithms=%s", tid, ",".join(r.algorithm for r in results))
        return build_response(record, cached=False, now=now)

    async def invalidate(self, track_ids: Any, ctx: CallerContext) -> dict[str, Any]:
        ctx.require_admin("cache invalidation")
        ids = _clean_ids(track_ids, limit=settings.TRACK_BATCH_LIMIT, name="trackIds")
        deleted = await asyncio.to_thread(self.store.delete, ids)
        logger.info("[TEMPO] invalidate requested=%s deleted=%s by=%s", len(ids), deleted, ctx.user_id)
        return {"deleted": deleted, "track_ids": ids}

    async def update_selection(
        self,
        track_id: str,
        ctx: CallerContext,
        *,
        tempo_selected: str | None = None,
        key_selected: str | None = None,
        tempo_manual: Any = None,
        key_manual: Any = None,
        scale_manual: Any = None,
    ) -> dict[str, Any]:
        """Pin tempo and/or key to an algorithm or to manual values; algorithm fields stay intact."""
        ctx.require_admin("selection update")
        tid = str(track_id or "").strip()
        if not tid:
            raise ValidationError("trackId is required")
        for name, value in (("tempoSelected", tempo_selected), ("keySelected", key_selected)):
            if value is not None and value not in SELECTION_VALUES:
                raise ValidationError(f"{name} must be one of {', '.join(SELECTION_VALUES)}")
        record = await asyncio.to_thread(self.store.get, tid)
        if record is None:
            raise ValidationError(f"no cache record for track {tid}")

        update: dict[str, Any] = {}
        if tempo_manual is not None:
            manual = as_float(tempo_manual)
            if manual is None or manual <= 0:
                raise ValidationError("tempoManual must be a positive number")
            update["tempo_manual"] = manual
        if key_manual is not None or scale_manual is not None:
            key, scale = normalize_key(key_manual), normalize_scale(scale_manual)
            if not key or not scale:
                raise ValidationError("keyManual and scaleManual are required together")
            update["key_manual"] = key
            update["scale_manual"] = scale
        if tempo_selected is not None:
            if tempo_selected == MANUAL_SELECTION and update.get("tempo_manual", record.tempo_manual) is None:
                raise ValidationError("tempoManual is required when tempoSelected is manual")
            update["tempo_selected"] = tempo_selected
        if key_selected is not None:
            if key_selected == MANUAL_SELECTION and not update.get("key_manual", record.key_manual):
                raise ValidationError("keyManual and scaleManual are required when keySelected is manual")
            update["key_selected"] = key_selected
        if not update:
            raise ValidationError("nothing to update")

        updated = await asyncio.to_thread(self.store.merge, tid, update, touch=False)
        logger.info("[TEMPO] track_id=%s selection=%s by=%s", tid, sorted(update), ctx.user_id)
        return build_response(updated, cached=True, now=self.clock())

    # review

    async def review(self, track_id: str, action: str, ctx: CallerContext) -> dict[str, Any]:
        record = await self.reviewer.review(track_id, action, ctx)
        return build_response(record, cached=True, now=self.clock())

    async def clear_review(self, track_id: str, ctx: CallerContext) -> dict[str, Any]:
        record = await self.reviewer.clear(track_id, ctx)
        return build_response(record, cached=True, now=self.clock())

    async def mismatches(self, ctx: CallerContext, *, limit: int = settings.MISMATCH_LIST_LIMIT, pending_only: bool = False) -> list[dict[str, Any]]:
        if pending_only:
            records = await self.reviewer.pending(ctx, limit)
        else:
            records = await self.reviewer.listing(ctx, limit)
        return [review_summary(record) for record in records]

    async def resolve_pending_mismatches(self, ctx: CallerContext, *, limit: int = settings.MISMATCH_LIST_LIMIT) -> dict[str, Any]:
        return await self.reviewer.resolve_pending(ctx, limit)

    async def _recompute_pending(self, record: CacheRecord) -> dict[str, Any]:
        tid = record.track_id
        if self.inflight.running(tid):
            return {"track_id": tid, "isrc": record.isrc, "status": OUTCOME_SKIPPED, "reason": "in_progress", "preview_url": None}
        run = await self.inflight.run(tid, lambda: self._recompute_by_isrc(record))
        return run.outcome

    async def _review_identifiers(self, record: CacheRecord) -> TrackIdentifiers:
        ids = _record_identifiers(record)
        if ids.isrc or self.track_lookup is None:
            return ids
        try:
            track = await asyncio.to_thread(self.track_lookup, record.track_id)
        except _CATALOG_ERRORS as exc:
            logger.warning("[REVIEW] track_id=%s catalog lookup failed error=%s", record.track_id, exc)
            return ids
        return extract_identifiers(track) if track else ids

    async def _recompute_by_isrc(self, record: CacheRecord) -> _BulkOutcome:
        """Recompute a flagged record from an excerpt fetched by its ISRC; nothing is written unless it matches."""
        now = self.clock()
        current = build_response(record, cached=True, now=now)
        ids = await self._review_identifiers(record)
        outcome: dict[str, Any] = {"track_id": record.track_id, "isrc": ids.isrc, "preview_url": None}
        if not ids.isrc:
            outcome.update({"status": OUTCOME_SKIPPED, "reason": "missing_isrc"})
            return _BulkOutcome(current, outcome)
        resolver = self.resolver.restricted_to(ISRC_KEYED_PROVIDERS)
        resolution = await resolver.resolve(ids, country=normalize_country(None))
        if not resolution.found:
            outcome.update({"status": OUTCOME_SKIPPED, "reason": "no_preview"})
            return _BulkOutcome(current, outcome)
        if detect_mismatch(ids, resolution.winner):
            outcome.update({"status": OUTCOME_SKIPPED, "reason": "isrc_mismatch"})
            return _BulkOutcome(current, outcome)
        outcome["preview_url"] = resolution.url
        try:
            results = await self._analyze(str(resolution.url))
        except DetectionUnavailable as exc:
            outcome.update({"status": OUTCOME_FAILED, "reason": str(exc)})
            return _BulkOutcome(current, outcome)

        update = _identity_update(ids)
        update.update(_provenance_update(resolution))
        update.update(_results_update(results))
        update.update({"isrc_mismatch": False, "error": None, "error_kind": None})
        stored = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
        logger.info("[REVIEW] track_id=%s recomputed isrc=%s source=%s", ids.track_id, ids.isrc, resolution.source)
        outcome.update({"status": OUTCOME_RESOLVED, "reason": None})
        return _BulkOutcome(build_response(stored, cached=False, now=now), outcome)

    # previews

    async def _prepare_track(self, track_id: str, country: str, *, force: bool = False) -> dict[str, Any] | _PreparedPreview:
        """Resolve a track's excerpt and store its provenance, leaving analysis to the caller."""
        record = await asyncio.to_thread(self.store.get, track_id)
        now = self.clock()
        if not force and record is not None and not needs_refresh(record, now):
            return build_response(record, cached=True, now=now)
        if self.track_lookup is None:
            raise ValidationError("catalog lookup is not configured")
        try:
            track = await asyncio.to_thread(self.track_lookup, track_id)
        except _CATALOG_ERRORS as exc:
            logger.warning("[TEMPO] track_id=%s catalog lookup failed error=%s", track_id, exc)
            return empty_response(track_id, error=f"catalog lookup failed: {exc}", status=STATUS_FAILED)
        if not track:
            response = empty_response(track_id, error="Track not found in catalog", status=STATUS_FAILED)
            response["retryable"] = False
            return response
        ids = extract_identifiers(track)
        resolution = await self.resolver.resolve(ids, country=country)
        update = _identity_update(ids)
        update.update(_provenance_update(resolution))
        if not resolution.found:
            update.update(_failure_update(NoPreviewFound()))
            update["isrc_mismatch"] = False
            stored = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
            return build_response(stored, cached=False, now=now)
        winner = resolution.winner
        mismatch = detect_mismatch(ids, winner)
        update["isrc_mismatch"] = mismatch
        stored = await asyncio.to_thread(self.store.merge, ids.track_id, update, now=now)
        meta = {
            "source": resolution.source,
            "url": resolution.url,
            "isrcMismatch": mismatch,
            "detectedIsrc": winner.detected_isrc if winner else None,
            "detectedTitle": winner.detected_title if winner else None,
            "detectedArtist": winner.detected_artist if winner else None,
            "candidates": [candidate.as_dict() for candidate in resolution.candidates],
        }
        return _PreparedPreview(build_response(stored, cached=False, now=now), str(resolution.url), meta)

    async def refresh_preview(self, track_id: str, *, country: str | None = None) -> dict[str, Any]:
        """Re-run the preview chain for one track regardless of freshness; stored detection values are kept."""
        tid = str(track_id or "").strip()
        if not tid:
            raise ValidationError("trackId is required")
        storefront = normalize_country(country)
        outcome = await self.inflight.run(tid, lambda: self._prepare_track(tid, storefront, force=True))
        response = dict(_response_of(outcome))
        response["preview_url"] = outcome.url if isinstance(outcome, _PreparedPreview) else None
        response["country"] = storefront
        logger.info("[PREVIEW] track_id=%s refreshed country=%s source=%s", tid, storefront, response.get("source"))
        return response

    # bulk

    async def _prepare_one(self, track_id: str, record: CacheRecord | None, country: str, now: datetime) -> tuple[str, Any]:
        if record is not None and not needs_refresh(record, now):
            return "immediate", build_response(record, cached=True, now=now)
        # Only the run that starts the preparation submits the excerpt; joiners report it as in progress.
        joined = self.inflight.running(track_id)
        outcome = await self.inflight.run(track_id, lambda: self._prepare_track(track_id, country))
        if isinstance(outcome, _PreparedPreview) and not joined:
            return "pending", (outcome.url, outcome.meta)
        return "immediate", _response_of(outcome)

    async def prepare_streaming_batch(self, track_ids: Any, *, country: str | None = None) -> StreamingBatchPlan:
        """Split tracks into immediately answerable ones and excerpt URLs to submit for analysis."""
        ids = _clean_ids(track_ids, limit=settings.TRACK_BATCH_LIMIT, name="trackIds")
        storefront = normalize_country(country)
        records = await asyncio.to_thread(self.store.get_many, ids)
        now = self.clock()
        outcomes = await asyncio.gather(
            *(self._prepare_one(tid, records.get(tid), storefront, now) for tid in ids)
        )
        plan = StreamingBatchPlan()
        for tid, (kind, value) in zip(ids, outcomes):
            if kind == "immediate":
                plan.immediate_results[tid] = value
                continue
            url, meta = value
            plan.index_to_track_id[len(plan.urls)] = tid
            plan.urls.append(url)
            plan.preview_meta[tid] = meta
        logger.info("[TEMPO] stream batch prepared tracks=%s pending=%s immediate=%s", len(ids), len(plan.urls), len(plan.immediate_results))
        return plan

    async def start_streaming_batch(self, track_ids: Any, *, country: str | None = None) -> StreamingBatchPlan:
        plan = await self.prepare_streaming_batch(track_ids, country=country)
        if not plan.urls:
            return plan
        try:
            plan.batch_id = await self.submit_bulk(plan.urls)
        except DetectionUnavailable as exc:
            now = self.clock()
            plan.error = str(exc)
            for tid in plan.index_to_track_id.values():
                record = await asyncio.to_thread(
                    self.store.merge,
                    tid,
                    _failure_update(exc),
                    now=now,
                )
                plan.immediate_results[tid] = build_response(record, cached=False, now=now)
            plan.urls, plan.index_to_track_id, plan.preview_meta = [], {}, {}
        return plan

    async def submit_bulk(self, urls: Any) -> str:
        if not isinstance(urls, (list, tuple)) or not urls:
            raise ValidationError("urls must be a non-empty array")
        cleaned = [str(url).strip() for url in urls if isinstance(url, str) and url.strip()]
        if len(cleaned) != len(urls):
            raise ValidationError("urls must be non-empty strings")
        return await asyncio.to_thread(self.backend.submit_batch, cleaned)

    def stream_results(self, batch_id: str, *, expected: int | None = None) -> BatchResultStream:
        bid = str(batch_id or "").strip()
        if not bid:
            raise ValidationError("batch_id is required")
        return BatchResultStream(self.backend, bid, expected=expected)

    async def ingest_stream(
        self,
        batch_id: str,
        index_to_track_id: dict[int, str],
        preview_meta: dict[str, dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Consume a batch server-side, merging each record as it arrives.

        `preview_meta` maps track ids to the preview description returned by the
        batch plan; its source, candidates and mismatch flag are stored with the result.
        """
        metas = preview_meta if isinstance(preview_meta, dict) else {}
        stream = self.stream_results(batch_id, expected=len(index_to_track_id))
        iterator = iter(stream)
        ingested = 0
        failed = 0
        try:
            while True:
                record = await asyncio.to_thread(next, iterator, None)
                if record is None:
                    break
                tid = index_to_track_id.get(record_index(record))
                if not tid:
                    continue
                now = self.clock()
                if record.get("error"):
                    update = _failure_update(DetectionUnavailable(str(record["error"])))
                    failed += 1
                else:
                    try:
                        results = parse_detection_payload(record)
                    except ValidationError as exc:
                        results = []
                        logger.warning("[TEMPO] batch_id=%s track_id=%s malformed record error=%s", batch_id, tid, exc)
                    if not results:
                        update = _failure_update(DetectionUnavailable("detection service returned no tempo or key"))
                        failed += 1
                    else:
                        update = _results_update(results)
                        update.update({"error": None, "error_kind": None})
                        ingested += 1
                meta = metas.get(tid)
                if isinstance(meta, dict):
                    update = {**await self._preview_meta_update(tid, meta), **update}
                await asyncio.to_thread(self.store.merge, tid, update, now=now)
        finally:
            stream.close()
        logger.info("[TEMPO] batch_id=%s ingested=%s failed=%s completed=%s", batch_id, ingested, failed, stream.completed)
        return {"batch_id": batch_id, "ingested": ingested, "failed": failed, "completed": stream.completed}

    async def health(self) -> dict[str, Any]:
        try:
            detection = await asyncio.to_thread(self.backend.health)
        except DetectionUnavailable as exc:
            return {"status": "unavailable", "error": str(exc), "in_flight": len(self.inflight.in_flight())}
        return {"status": "ok", "detection": detection, "in_flight": len(self.inflight.in_flight())}
