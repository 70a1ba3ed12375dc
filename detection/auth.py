"""Identity tokens for the detection service."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import timezone
from typing import Any, Callable

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import id_token, service_account

from config.settings import GCP_SERVICE_ACCOUNT_KEY
from engine.errors import DetectionUnavailable

logger = logging.getLogger(__name__)

TokenProvider = Callable[[str], str]

# Google identity tokens live for an hour; refresh a little before that.
_DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
_REFRESH_MARGIN_SECONDS = 300


def _install_google_auth_filter() -> None:
    for logger_name in ("google.auth.transport.requests", "google.auth.credentials"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def load_service_account_info(raw: str | None) -> dict[str, Any] | None:
    text = (raw or "").strip()
    if not text:
        return None
    try:
        info = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("GCP_SERVICE_ACCOUNT_KEY is not valid JSON") from exc
    if not isinstance(info, dict):
        raise ValueError("GCP_SERVICE_ACCOUNT_KEY must be a JSON object")
    return info


class GoogleIdentityTokenProvider:
    """Mint and cache Google-signed identity tokens per audience.

    With a service-account key the token is minted from it; otherwise ambient
    credentials (metadata server, GOOGLE_APPLICATION_CREDENTIALS) are used.
    """

    def __init__(self, service_account_info: dict[str, Any] | None = None) -> None:
        self.service_account_info = service_account_info
        self._tokens: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        _install_google_auth_filter()

    @classmethod
    def from_env(cls) -> "GoogleIdentityTokenProvider":
        return cls(load_service_account_info(GCP_SERVICE_ACCOUNT_KEY))

    def _mint(self, audience: str) -> tuple[str, float]:
        request = Request()
        if self.service_account_info:
            credentials = service_account.IDTokenCredentials.from_service_account_info(
                self.service_account_info,
                target_audience=audience,
            )
            credentials.refresh(request)
            expiry = credentials.expiry
            expires_at = (
                expiry.replace(tzinfo=timezone.utc).timestamp() if expiry is not None else time.time() + _DEFAULT_TOKEN_LIFETIME_SECONDS
            )
            return str(credentials.token), expires_at
        token = id_token.fetch_id_token(request, audience)
        return str(token), time.time() + _DEFAULT_TOKEN_LIFETIME_SECONDS

    def __call__(self, audience: str) -> str:
        now = time.time()
        with self._lock:
            cached = self._tokens.get(audience)
            if cached and now < cached[1] - _REFRESH_MARGIN_SECONDS:
                return cached[0]
            try:
                token, expires_at = self._mint(audience)
            except GoogleAuthError as exc:
                logger.warning("[DETECTION] identity token failed audience=%s error=%s", audience, exc)
                raise DetectionUnavailable(f"identity token unavailable: {exc}") from exc
            self._tokens[audience] = (token, expires_at)
            logger.info("[DETECTION] identity token minted audience=%s", audience)
            return token


class StaticTokenProvider:
    def __init__(self, token: str) -> None:
        self.token = token

    def __call__(self, audience: str) -> str:
        return self.token
