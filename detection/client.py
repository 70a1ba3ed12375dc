"""HTTP client for the remote tempo/key detection service."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Iterator, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import settings
from detection.auth import GoogleIdentityTokenProvider
from detection.results import DetectionResult, parse_service_response
from engine.errors import DetectionUnavailable

logger = logging.getLogger(__name__)


class DetectionBackend(Protocol):
    def analyze(self, url: str) -> list[DetectionResult]:
        raise NotImplementedError

    def submit_batch(self, urls: list[str]) -> str:
        raise NotImplementedError

    def stream_batch(self, batch_id: str) -> Iterator[dict[str, Any]]:
        raise NotImplementedError

    def poll_batch(self, batch_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def health(self) -> dict[str, Any]:
        raise NotImplementedError


def iter_ndjson(lines: Iterator[Any]) -> Iterator[dict[str, Any]]:
    """One record per non-empty line; a malformed line is a DetectionUnavailable."""
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        text = (line or "").strip()
        if not text:
            continue
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DetectionUnavailable(f"malformed stream record: {text[:80]}") from exc
        if isinstance(record, dict):
            yield record


class RemoteDetectionClient:
    """Talks to the detection service with a bearer identity token."""

    def __init__(
        self,
        service_url: str | None = None,
        token_provider: Callable[[str], str] | None = None,
        *,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.service_url = (service_url or settings.DETECTION_SERVICE_URL).rstrip("/")
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds or settings.DETECTION_TIMEOUT_SECONDS
        self._session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=3,
            backoff_factor=0.4,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token_provider is not None:
            headers["Authorization"] = f"Bearer {self.token_provider(self.service_url)}"
        return headers

    def _send(self, method: str, path: str, *, body: dict[str, Any] | None = None, stream: bool = False) -> requests.Response:
        if not self.service_url:
            raise DetectionUnavailable("detection service url is not configured")
        url = f"{self.service_url}{path}"
        try:
            resp = self._session.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=self.timeout_seconds,
                stream=stream,
            )
        except requests.Timeout as exc:
            logger.warning("[DETECTION] request=%s %s status=timeout", method, path)
            raise DetectionUnavailable(f"detection service timed out: {path}") from exc
        except requests.RequestException as exc:
            logger.warning("[DETECTION] request=%s %s status=error error=%s", method, path, exc)
            raise DetectionUnavailable(f"detection service unreachable: {exc}") from exc
        status = int(resp.status_code)
        logger.info("[DETECTION] request=%s %s status=%s", method, path, status)
        if status < 200 or status >= 300:
            detail = (resp.text or "")[:200]
            resp.close()
            raise DetectionUnavailable(f"detection service error: {status} {detail}".strip(), status)
        return resp

    def _json(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = self._send(method, path, body=body)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DetectionUnavailable(f"detection service returned invalid json: {path}") from exc
        if not isinstance(payload, dict):
            raise DetectionUnavailable(f"detection service returned unexpected payload: {path}")
        return payload

    def analyze(self, url: str) -> list[DetectionResult]:
        payload = self._json("POST", "/analyze", {"url": url})
        return parse_service_response(payload)

    def submit_batch(self, urls: list[str]) -> str:
        payload = self._json(
            "POST",
            "/analyze/batch",
            {
                "urls": list(urls),
                "max_confidence": settings.DETECTION_MAX_CONFIDENCE,
                "debug_level": settings.DETECTION_DEBUG_LEVEL,
            },
        )
        batch_id = str(payload.get("batch_id") or "").strip()
        if not batch_id:
            raise DetectionUnavailable("detection service response missing batch_id")
        logger.info("[DETECTION] batch submitted batch_id=%s urls=%s", batch_id, len(urls))
        return batch_id

    def stream_batch(self, batch_id: str) -> Iterator[dict[str, Any]]:
        """Yield NDJSON records as the service produces them; closes the response when done."""
        resp = self._send("GET", f"/stream/{batch_id}", stream=True)
        try:
            yield from iter_ndjson(resp.iter_lines(decode_unicode=True))
        finally:
            resp.close()

    def poll_batch(self, batch_id: str) -> dict[str, Any]:
        return self._json("GET", f"/batch/{batch_id}")

    def health(self) -> dict[str, Any]:
        return self._json("GET", "/health")


_CLIENT: RemoteDetectionClient | None = None
_CLIENT_LOCK = threading.Lock()


def get_detection_client() -> RemoteDetectionClient:
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    with _CLIENT_LOCK:
        if _CLIENT is None:
            _CLIENT = RemoteDetectionClient(token_provider=GoogleIdentityTokenProvider.from_env())
    return _CLIENT
