from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import PROVIDER_TIMEOUT_SECONDS
from engine.errors import ProviderUnavailable
from engine.identifiers import TrackIdentifiers

logger = logging.getLogger(__name__)

PROVIDER_USER_AGENT = "Mozilla/5.0"


@dataclass(frozen=True)
class PreviewCandidate:
    """One provider attempt, successful or not."""

    provider: str
    success: bool
    url: str | None = None
    detected_isrc: str | None = None
    detected_title: str | None = None
    detected_artist: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PreviewCandidate":
        return cls(
            provider=str(data.get("provider") or ""),
            success=bool(data.get("success")),
            url=data.get("url"),
            detected_isrc=data.get("detected_isrc"),
            detected_title=data.get("detected_title"),
            detected_artist=data.get("detected_artist"),
            error=data.get("error"),
        )


class PreviewProvider(Protocol):
    name: str

    def lookup(self, ids: TrackIdentifiers, *, country: str) -> PreviewCandidate | None:
        """Return a candidate, None when not applicable, or raise ProviderUnavailable."""
        raise NotImplementedError


def build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.4,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class HttpPreviewProvider:
    """Shared JSON-over-HTTP plumbing for storefront providers."""

    name = "http"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._session = session or build_session()
        self.timeout_seconds = timeout_seconds

    def _request_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = self._session.get(
                url,
                params=params or {},
                headers={"User-Agent": PROVIDER_USER_AGENT},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            logger.info("[PREVIEW] provider=%s status=timeout", self.name)
            raise ProviderUnavailable(self.name, "timeout") from exc
        except requests.RequestException as exc:
            logger.info("[PREVIEW] provider=%s status=error error=%s", self.name, exc)
            raise ProviderUnavailable(self.name, f"request failed: {exc}") from exc
        status = int(resp.status_code)
        logger.info("[PREVIEW] provider=%s status=%s", self.name, status)
        if status != 200:
            raise ProviderUnavailable(self.name, f"http {status}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProviderUnavailable(self.name, "invalid json") from exc
        if not isinstance(payload, dict):
            raise ProviderUnavailable(self.name, "unexpected payload")
        return payload
