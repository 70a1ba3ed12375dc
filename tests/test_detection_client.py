from __future__ import annotations

import json

import pytest
import requests

from detection.auth import StaticTokenProvider
from detection.client import RemoteDetectionClient, iter_ndjson
from engine.errors import DetectionUnavailable


class _Response:
    def __init__(self, status_code: int = 200, payload=None, lines: list[str] | None = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self._lines = lines or []
        self.text = text
        self.closed = False

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_lines(self, decode_unicode: bool = False):
        yield from self._lines

    def close(self) -> None:
        self.closed = True


class _Session:
    def __init__(self, *responses, exc: Exception | None = None) -> None:
        self.responses = list(responses)
        self.exc = exc
        self.requests: list[dict] = []

    def request(self, method, url, json=None, headers=None, timeout=None, stream=False):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers, "stream": stream})
        if self.exc is not None:
            raise self.exc
        return self.responses.pop(0)


def _client(session: _Session) -> RemoteDetectionClient:
    return RemoteDetectionClient(
        "https://detect.example/",
        StaticTokenProvider("tok"),
        timeout_seconds=5,
        session=session,
    )


def test_analyze_sends_bearer_token_and_parses_results() -> None:
    session = _Session(_Response(200, {"results": [{"algorithm": "essentia", "tempo": 64.25}]}))

    results = _client(session).analyze("https://audio/preview.mp3")

    sent = session.requests[0]
    assert sent["method"] == "POST"
    assert sent["url"] == "https://detect.example/analyze"
    assert sent["json"] == {"url": "https://audio/preview.mp3"}
    assert sent["headers"]["Authorization"] == "Bearer tok"
    assert results[0].tempo == 128.5


def test_non_2xx_is_detection_unavailable_with_status() -> None:
    session = _Session(_Response(503, text="overloaded"))

    with pytest.raises(DetectionUnavailable) as exc_info:
        _client(session).analyze("https://audio/preview.mp3")

    assert exc_info.value.status_code == 503


def test_transport_errors_are_detection_unavailable() -> None:
    with pytest.raises(DetectionUnavailable):
        _client(_Session(exc=requests.ConnectionError("refused"))).health()
    with pytest.raises(DetectionUnavailable):
        _client(_Session(exc=requests.Timeout("slow"))).health()


def test_missing_service_url_is_detection_unavailable(monkeypatch) -> None:
    monkeypatch.setattr("config.settings.DETECTION_SERVICE_URL", "")
    client = RemoteDetectionClient(session=_Session())
    with pytest.raises(DetectionUnavailable):
        client.analyze("https://audio/preview.mp3")


def test_submit_batch_requires_batch_id() -> None:
    session = _Session(_Response(200, {"batch_id": "b-1"}), _Response(200, {"status": "queued"}))
    client = _client(session)

    assert client.submit_batch(["https://a", "https://b"]) == "b-1"
    assert session.requests[0]["json"]["urls"] == ["https://a", "https://b"]
    assert "max_confidence" in session.requests[0]["json"]
    with pytest.raises(DetectionUnavailable):
        client.submit_batch(["https://a"])


def test_stream_batch_yields_records_and_closes_response() -> None:
    lines = [json.dumps({"index": 0, "bpm_essentia": 120}), "", json.dumps({"index": 1, "error": "decode"})]
    response = _Response(200, lines=lines)
    session = _Session(response)

    records = list(_client(session).stream_batch("b-1"))

    assert session.requests[0]["url"] == "https://detect.example/stream/b-1"
    assert session.requests[0]["stream"] is True
    assert [record["index"] for record in records] == [0, 1]
    assert response.closed is True


def test_iter_ndjson_rejects_malformed_lines() -> None:
    with pytest.raises(DetectionUnavailable):
        list(iter_ndjson(iter(['{"index": 0}', "{broken"])))
