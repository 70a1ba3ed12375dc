from __future__ import annotations

import importlib
import json
import sys
from datetime import datetime, timezone

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from db.tempo_cache import TempoCacheStore
from detection.results import parse_service_response
from engine.errors import DetectionUnavailable
from engine.service import TempoResolutionService
from previews.providers.catalog import CatalogPreviewProvider
from previews.resolver import PreviewResolver

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

TRACK = {
    "id": "track-1",
    "name": "Song A",
    "artists": [{"name": "Artist A"}],
    "external_ids": {"isrc": "USAAA0000001"},
    "preview_url": "https://p.scdn.co/track-1",
}


class _Backend:
    def __init__(self) -> None:
        self.analyzed: list[str] = []
        self.streams: list[list[dict]] = []
        self.healthy = True

    def analyze(self, url: str):
        self.analyzed.append(url)
        return parse_service_response({"results": [{"algorithm": "essentia", "tempo": 64.25}]})

    def submit_batch(self, urls: list[str]) -> str:
        return "b-1"

    def stream_batch(self, batch_id: str):
        yield from self.streams.pop(0)

    def poll_batch(self, batch_id: str) -> dict:
        return {"status": "completed", "results": []}

    def health(self) -> dict:
        if not self.healthy:
            raise DetectionUnavailable("down", 503)
        return {"status": "ok"}


def _build_client(monkeypatch, tmp_path) -> tuple[TestClient, object, _Backend]:
    monkeypatch.setattr("config.settings.TRUST_USER_HEADER", True)
    monkeypatch.setattr("config.settings.ADMIN_USERS", ("admin-1",))
    monkeypatch.setattr("config.settings.SUPER_ADMIN_USERS", ("root",))
    sys.modules.pop("api.main", None)
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()

    backend = _Backend()
    store = TempoCacheStore(str(tmp_path / "api.sqlite3"))
    module.app.state.service = TempoResolutionService(
        store,
        PreviewResolver([CatalogPreviewProvider()], timeout_seconds=2),
        backend,
        track_lookup=lambda track_id: TRACK if track_id == "track-1" else None,
        track_finder=lambda **kwargs: "track-1" if kwargs.get("isrc") else None,
        clock=lambda: NOW,
    )
    return TestClient(module.app), module, backend


def test_get_bpm_computes_then_serves_cached(monkeypatch, tmp_path) -> None:
    client, _module, backend = _build_client(monkeypatch, tmp_path)

    first = client.get("/api/bpm", params={"trackId": "track-1"})
    second = client.get("/api/bpm", params={"trackId": "track-1"})

    assert first.status_code == 200
    assert first.json()["tempo"] == 128.5
    assert first.json()["cached"] is False
    assert second.json()["cached"] is True
    assert len(backend.analyzed) == 1


def test_get_bpm_requires_track_id(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)

    response = client.get("/api/bpm")

    assert response.status_code == 400
    assert response.json() == {"detail": "trackId is required"}


def test_isrc_batch_reports_missing(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)
    client.get("/api/bpm", params={"trackId": "track-1"})

    response = client.post("/api/bpm/by-isrc/batch", json={"isrcs": ["USAAA0000001", "USZZZ0000000"]})

    results = response.json()["results"]
    assert results["USAAA0000001"]["tempo"] == 128.5
    assert results["USZZZ0000000"] == {"isrc": "USZZZ0000000", "cached": False}


def test_isrc_batch_rejects_empty_list(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)

    response = client.post("/api/bpm/by-isrc/batch", json={"isrcs": []})

    assert response.status_code == 400


def test_ingest_validation_messages(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)

    response = client.post("/api/bpm/ingest", json={"trackId": "track-1", "result": {"tempo": 120}})

    assert response.status_code == 400
    assert response.json()["detail"] == "previewMeta with source is required"

    ok = client.post(
        "/api/bpm/ingest",
        json={"trackId": "track-1", "result": {"tempo": 120}, "previewMeta": {"source": "itunes_search"}},
    )
    assert ok.status_code == 200
    assert ok.json()["ok"] is True
    assert ok.json()["result"]["tempo"] == 120.0


def test_recalculate_requires_admin(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)
    client.get("/api/bpm", params={"trackId": "track-1"})

    denied = client.post("/api/bpm/recalculate", json={"trackIds": ["track-1"]}, headers={"X-User-Id": "someone"})
    allowed = client.post("/api/bpm/recalculate", json={"trackIds": ["track-1"]}, headers={"X-User-Id": "admin-1"})

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["deleted"] == 1


def test_update_selection_manual_tempo(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)
    client.get("/api/bpm", params={"trackId": "track-1"})

    response = client.post(
        "/api/bpm/update-selection",
        json={"trackId": "track-1", "tempoSelected": "manual", "tempoManual": 130},
        headers={"X-User-Id": "admin-1"},
    )

    assert response.status_code == 200
    assert response.json()["tempo"] == 130.0
    assert response.json()["tempo_source"] == "manual"


def test_mismatch_admin_endpoints(monkeypatch, tmp_path) -> None:
    client, module, _backend = _build_client(monkeypatch, tmp_path)
    module.app.state.service.store.merge("track-7", {"tempo_essentia": 100.0, "isrc_mismatch": True}, now=NOW)

    assert client.get("/api/admin/isrc-mismatches").status_code == 403

    listing = client.get("/api/admin/isrc-mismatches", params={"pending": "true"}, headers={"X-User-Id": "admin-1"})
    assert listing.json()["count"] == 1
    assert listing.json()["items"][0]["review_state"] == "flagged_pending"

    reviewed = client.patch(
        "/api/admin/isrc-mismatches",
        json={"trackId": "track-7", "action": "confirm_match"},
        headers={"X-User-Id": "admin-1"},
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["tempo"] == 100.0

    bad_action = client.patch(
        "/api/admin/isrc-mismatches",
        json={"trackId": "track-7", "action": "maybe"},
        headers={"X-User-Id": "admin-1"},
    )
    assert bad_action.status_code == 400

    assert client.delete("/api/admin/isrc-mismatches/track-7/review", headers={"X-User-Id": "admin-1"}).status_code == 403
    cleared = client.delete("/api/admin/isrc-mismatches/track-7/review", headers={"X-User-Id": "root"})
    assert cleared.json()["review_state"] == "flagged_pending"


def test_stream_endpoint_emits_ndjson(monkeypatch, tmp_path) -> None:
    client, _module, backend = _build_client(monkeypatch, tmp_path)
    backend.streams.append([{"index": 0, "bpm_essentia": 120.0}, {"index": 1, "error": "decode failed"}])

    response = client.get("/api/stream/b-1", params={"expected": 2})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert [line["index"] for line in lines] == [0, 1]


def test_stream_batch_plan(monkeypatch, tmp_path) -> None:
    client, _module, _backend = _build_client(monkeypatch, tmp_path)

    response = client.post("/api/bpm/stream-batch", json={"trackIds": ["track-1"]})

    payload = response.json()
    assert payload["batchId"] == "b-1"
    assert payload["urls"] == ["https://p.scdn.co/track-1"]
    assert payload["indexToTrackId"] == {"0": "track-1"}


def test_health_reflects_detection_service(monkeypatch, tmp_path) -> None:
    client, _module, backend = _build_client(monkeypatch, tmp_path)

    assert client.get("/api/bpm/health").status_code == 200
    backend.healthy = False
    assert client.get("/api/bpm/health").status_code == 503


def test_stream_batch_ingest_applies_preview_meta(monkeypatch, tmp_path) -> None:
    client, module, backend = _build_client(monkeypatch, tmp_path)
    backend.streams.append([{"index": 0, "bpm_essentia": 120.0}])

    response = client.post(
        "/api/bpm/stream-batch/b-1/ingest",
        json={"indexToTrackId": {"0": "track-1"}, "previewMeta": {"track-1": {"source": "deezer_search"}}},
    )

    assert response.status_code == 200
    assert response.json()["ingested"] == 1
    record = module.app.state.service.store.get("track-1")
    assert record.source == "deezer_search"
    assert record.primary.tempo == 120.0


def test_preview_refresh_reruns_chain_with_country(monkeypatch, tmp_path) -> None:
    client, _module, backend = _build_client(monkeypatch, tmp_path)
    client.get("/api/bpm", params={"trackId": "track-1"})

    response = client.post("/api/bpm/preview-refresh", json={"trackId": "track-1", "country": "SE"})

    assert response.status_code == 200
    assert response.json()["preview_url"] == "https://p.scdn.co/track-1"
    assert response.json()["country"] == "se"
    assert response.json()["tempo"] == 128.5
    assert len(backend.analyzed) == 1
    assert client.post("/api/bpm/preview-refresh", json={}).status_code == 400


def test_resolve_all_mismatches_requires_admin(monkeypatch, tmp_path) -> None:
    client, module, _backend = _build_client(monkeypatch, tmp_path)
    module.app.state.service.store.merge("track-7", {"tempo_essentia": 100.0, "isrc_mismatch": True}, now=NOW)

    denied = client.post("/api/admin/isrc-mismatches/resolve-all", json={}, headers={"X-User-Id": "someone"})
    assert denied.status_code == 403

    response = client.post("/api/admin/isrc-mismatches/resolve-all", headers={"X-User-Id": "admin-1"})

    assert response.status_code == 200
    summary = response.json()
    assert (summary["processed"], summary["resolved"], summary["skipped"]) == (1, 0, 1)
    assert summary["results"][0]["reason"] == "missing_isrc"
