#!/usr/bin/env python3
import base64
import binascii
import hmac
import json
import logging
import os
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
import uvicorn
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config import settings
from db.tempo_cache import TempoCacheStore
from detection.client import get_detection_client
from engine.context import ANONYMOUS, CallerContext, context_for_user
from engine.errors import DetectionUnavailable, PermissionDenied, ValidationError
from engine.service import StreamingBatchPlan, TempoResolutionService
from previews.country import country_from_accept_language, normalize_country
from previews.providers import default_providers
from previews.resolver import PreviewResolver
from spotify.client import SpotifyTrackClient

APP_NAME = "tempocache API"
_BASIC_AUTH_ENABLED = bool(settings.BASIC_AUTH_USER and settings.BASIC_AUTH_PASS)
_TRUST_PROXY = os.environ.get("TEMPOCACHE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


def _setup_logging(log_dir):
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "tempocache.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _decode_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return None
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    user, password = decoded.split(":", 1)
    return user, password


def _check_basic_auth(header_value):
    credentials = _decode_basic_auth(header_value)
    if credentials is None:
        return False
    user, password = credentials
    return hmac.compare_digest(user, settings.BASIC_AUTH_USER) and hmac.compare_digest(
        password, settings.BASIC_AUTH_PASS
    )


def _caller_context(request: Request) -> CallerContext:
    """Identity for permission checks, resolved per request and passed down explicitly."""
    if settings.TRUST_USER_HEADER:
        user_id = (request.headers.get("x-user-id") or "").strip()
        if user_id:
            return context_for_user(user_id)
    if _BASIC_AUTH_ENABLED:
        credentials = _decode_basic_auth(request.headers.get("authorization"))
        if credentials is not None:
            return context_for_user(credentials[0])
    return ANONYMOUS


def _request_country(request: Request, country: Optional[str]) -> str:
    if country:
        return normalize_country(country)
    return country_from_accept_language(request.headers.get("accept-language"))


class TrackIdsRequest(BaseModel):
    trackIds: Optional[list[str]] = None


class IsrcBatchRequest(BaseModel):
    isrcs: Optional[list[str]] = None


class ComputeByIsrcRequest(BaseModel):
    isrc: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    trackId: Optional[str] = None
    country: Optional[str] = None


class UpdateSelectionRequest(BaseModel):
    trackId: Optional[str] = None
    tempoSelected: Optional[str] = None
    keySelected: Optional[str] = None
    tempoManual: Optional[float] = None
    keyManual: Optional[str] = None
    scaleManual: Optional[str] = None


class StreamBatchRequest(BaseModel):
    trackIds: Optional[list[str]] = None
    country: Optional[str] = None


class AnalyzeBatchRequest(BaseModel):
    urls: Optional[list[str]] = None


class StreamIngestRequest(BaseModel):
    indexToTrackId: Optional[dict[str, str]] = None
    previewMeta: Optional[dict[str, dict[str, Any]]] = None


class PreviewRefreshRequest(BaseModel):
    trackId: Optional[str] = None
    country: Optional[str] = None


class ResolveAllRequest(BaseModel):
    limit: Optional[int] = None


class ReviewRequest(BaseModel):
    trackId: Optional[str] = None
    action: Optional[str] = None


app = FastAPI(
    title=APP_NAME,
    description="Tempo and key resolution with a review-aware cache.",
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED:
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    if not _check_basic_auth(request.headers.get("authorization")):
        return PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    return await call_next(request)


@app.exception_handler(ValidationError)
async def _validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PermissionDenied)
async def _permission_error_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(DetectionUnavailable)
async def _detection_error_handler(request: Request, exc: DetectionUnavailable):
    return JSONResponse(status_code=502, content={"detail": str(exc), "retryable": True})


def build_service() -> TempoResolutionService:
    store = TempoCacheStore(settings.DB_PATH)
    store.ensure_schema()
    spotify = SpotifyTrackClient()
    return TempoResolutionService(
        store,
        PreviewResolver(default_providers()),
        get_detection_client(),
        track_lookup=spotify.get_track,
        track_finder=spotify.find_track_id,
    )


@app.on_event("startup")
async def startup():
    _setup_logging(settings.LOG_DIR)
    app.state.service = build_service()
    logging.info("[API] started db=%s detection=%s", settings.DB_PATH, settings.DETECTION_SERVICE_URL or "unset")


def _service() -> TempoResolutionService:
    service = getattr(app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return service


def _plan_payload(plan: StreamingBatchPlan) -> dict[str, Any]:
    return {
        "batchId": plan.batch_id,
        "urls": plan.urls,
        "indexToTrackId": {str(index): tid for index, tid in plan.index_to_track_id.items()},
        "previewMeta": plan.preview_meta,
        "immediateResults": plan.immediate_results,
        "error": plan.error,
    }


@app.get("/api/bpm")
async def api_bpm(request: Request, trackId: Optional[str] = Query(None), country: Optional[str] = Query(None)):
    return await _service().resolve(trackId or "", country=_request_country(request, country))


@app.post("/api/bpm/batch")
async def api_bpm_batch(payload: TrackIdsRequest):
    return {"results": await _service().resolve_many(payload.trackIds)}


@app.post("/api/bpm/by-isrc/batch")
async def api_bpm_by_isrc_batch(payload: IsrcBatchRequest):
    return {"results": await _service().batch_by_isrc(payload.isrcs)}


@app.post("/api/bpm/by-isrc/compute")
async def api_bpm_by_isrc_compute(request: Request, payload: ComputeByIsrcRequest):
    return await _service().compute_by_isrc(
        isrc=payload.isrc,
        title=payload.title,
        artist=payload.artist,
        track_id=payload.trackId,
        country=_request_country(request, payload.country),
    )


@app.post("/api/bpm/ingest")
async def api_bpm_ingest(payload: Any = Body(None)):
    result = await _service().ingest(payload)
    return {"ok": True, "result": result}


@app.post("/api/bpm/recalculate")
async def api_bpm_recalculate(request: Request, payload: TrackIdsRequest):
    return await _service().invalidate(payload.trackIds, _caller_context(request))


@app.post("/api/bpm/update-selection")
async def api_bpm_update_selection(request: Request, payload: UpdateSelectionRequest):
    return await _service().update_selection(
        payload.trackId or "",
        _caller_context(request),
        tempo_selected=payload.tempoSelected,
        key_selected=payload.keySelected,
        tempo_manual=payload.tempoManual,
        key_manual=payload.keyManual,
        scale_manual=payload.scaleManual,
    )


@app.post("/api/bpm/preview-refresh")
async def api_bpm_preview_refresh(request: Request, payload: PreviewRefreshRequest):
    return await _service().refresh_preview(
        payload.trackId or "",
        country=_request_country(request, payload.country),
    )


@app.post("/api/bpm/stream-batch")
async def api_bpm_stream_batch(request: Request, payload: StreamBatchRequest):
    plan = await _service().start_streaming_batch(
        payload.trackIds,
        country=_request_country(request, payload.country),
    )
    return _plan_payload(plan)


@app.post("/api/bpm/stream-batch/{batch_id}/ingest")
async def api_bpm_stream_batch_ingest(batch_id: str, payload: StreamIngestRequest):
    mapping: dict[int, str] = {}
    for index, track_id in (payload.indexToTrackId or {}).items():
        try:
            mapping[int(index)] = track_id
        except ValueError:
            raise HTTPException(status_code=400, detail="indexToTrackId keys must be integers")
    if not mapping:
        raise HTTPException(status_code=400, detail="indexToTrackId is required")
    return await _service().ingest_stream(batch_id, mapping, payload.previewMeta)


@app.post("/api/bpm/analyze/batch")
async def api_bpm_analyze_batch(payload: AnalyzeBatchRequest):
    return {"batch_id": await _service().submit_bulk(payload.urls)}


@app.get("/api/stream/{batch_id}")
async def api_stream(batch_id: str, expected: Optional[int] = Query(None, ge=1)):
    stream = _service().stream_results(batch_id, expected=expected)

    def body():
        try:
            for record in stream:
                yield json.dumps(record, separators=(",", ":")) + "\n"
        finally:
            stream.close()

    return StreamingResponse(
        body(),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/bpm/health")
async def api_bpm_health():
    health = await _service().health()
    status_code = 200 if health.get("status") == "ok" else 503
    return JSONResponse(status_code=status_code, content=health)


@app.get("/api/admin/isrc-mismatches")
async def api_admin_isrc_mismatches(
    request: Request,
    limit: int = Query(settings.MISMATCH_LIST_LIMIT, ge=1, le=settings.MISMATCH_LIST_LIMIT),
    pending: bool = Query(False),
):
    items = await _service().mismatches(_caller_context(request), limit=limit, pending_only=pending)
    return {"items": items, "count": len(items)}


@app.patch("/api/admin/isrc-mismatches")
async def api_admin_isrc_mismatch_review(request: Request, payload: ReviewRequest):
    return await _service().review(payload.trackId or "", payload.action or "", _caller_context(request))


@app.post("/api/admin/isrc-mismatches/resolve-all")
async def api_admin_isrc_mismatches_resolve_all(request: Request, payload: Optional[ResolveAllRequest] = None):
    requested = payload.limit if payload is not None else None
    limit = requested if requested and requested > 0 else settings.MISMATCH_LIST_LIMIT
    return await _service().resolve_pending_mismatches(_caller_context(request), limit=limit)


@app.delete("/api/admin/isrc-mismatches/{track_id}/review")
async def api_admin_isrc_mismatch_clear(request: Request, track_id: str):
    return await _service().clear_review(track_id, _caller_context(request))


def main():
    uvicorn.run(
        "api.main:app",
        host=os.environ.get("TEMPOCACHE_HOST", "0.0.0.0"),
        port=int(os.environ.get("TEMPOCACHE_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
