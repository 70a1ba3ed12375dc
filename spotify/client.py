"""Spotify Web API client for single-track metadata lookups."""

from __future__ import annotations

import base64
import logging
import time
import urllib.parse
from typing import Any

import requests

from config import settings
from engine.errors import ValidationError
from engine.identifiers import normalize_isrc
from engine.text_matching import strip_featuring

_LOG = logging.getLogger(__name__)


class SpotifyRequestError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SpotifyTrackClient:
    """Client-credentials client for reading catalog tracks from Spotify."""

    _TOKEN_URL = "https://accounts.spotify.com/api/token"
    _TRACK_URL = "https://api.spotify.com/v1/tracks/{track_id}"
    _SEARCH_URL = "https://api.spotify.com/v1/search"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        access_token: str | None = None,
        timeout_sec: int = 20,
        max_rate_limit_retries: int = 3,
    ) -> None:
        self.client_id = client_id or settings.SPOTIFY_CLIENT_ID
        self.client_secret = client_secret or settings.SPOTIFY_CLIENT_SECRET
        self.timeout_sec = timeout_sec
        self.max_rate_limit_retries = max_rate_limit_retries
        self._provided_access_token = (access_token or "").strip() or None
        self._access_token: str | None = None
        self._access_token_expire_at: float = 0.0

    def _get_access_token(self) -> str:
        if self._provided_access_token:
            return self._provided_access_token

        if not self.client_id or not self.client_secret:
            raise SpotifyRequestError("Spotify credentials are required")

        now = time.time()
        if self._access_token and now < self._access_token_expire_at:
            return self._access_token

        auth_payload = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        auth_header = base64.b64encode(auth_payload).decode("ascii")
        response = requests.post(
            self._TOKEN_URL,
            data={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {auth_header}"},
            timeout=self.timeout_sec,
        )
        if response.status_code != 200:
            raise SpotifyRequestError(
                f"Spotify token request failed ({response.status_code})", response.status_code
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise SpotifyRequestError("Spotify token response missing access_token")

        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = token
        self._access_token_expire_at = now + max(0, expires_in - 30)
        return token

    def _request_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """GET a Spotify resource, honouring 429 Retry-After; 404 yields None."""
        unauthorized_retry_used = False
        attempts = 0
        while True:
            attempts += 1
            token = self._get_access_token()
            headers = {"Authorization": f"Bearer {token}"}
            response = requests.get(url, params=params, headers=headers, timeout=self.timeout_sec)

            if response.status_code == 401 and not unauthorized_retry_used:
                unauthorized_retry_used = True
                self._access_token = None
                continue

            if response.status_code == 429:
                if attempts > self.max_rate_limit_retries:
                    raise SpotifyRequestError("Spotify request failed (429: rate limit exceeded retries)", 429)
                retry_after = response.headers.get("Retry-After", "1")
                try:
                    sleep_sec = float(retry_after)
                except (TypeError, ValueError):
                    sleep_sec = 1.0
                _LOG.info("[SPOTIFY] rate limited retry_after=%s attempt=%s", sleep_sec, attempts)
                time.sleep(max(0.0, min(sleep_sec, 30.0)))
                continue

            if response.status_code == 404:
                return None
            if response.status_code != 200:
                raise SpotifyRequestError(f"Spotify request failed ({response.status_code})", response.status_code)
            return response.json()

    def get_track(self, track_id: str) -> dict[str, Any] | None:
        """Fetch a catalog track object, or None when Spotify does not know the id."""
        track_id = (track_id or "").strip()
        if not track_id:
            raise ValidationError("trackId is required")
        encoded_id = urllib.parse.quote(track_id, safe="")
        payload = self._request_json(self._TRACK_URL.format(track_id=encoded_id))
        _LOG.info("[SPOTIFY] track_id=%s found=%s", track_id, bool(payload))
        return payload

    def _search_first_id(self, query: str) -> str | None:
        payload = self._request_json(self._SEARCH_URL, params={"q": query, "type": "track", "limit": 1})
        items = ((payload or {}).get("tracks") or {}).get("items") or []
        for item in items:
            if isinstance(item, dict) and item.get("id"):
                return str(item["id"])
        return None

    def find_track_id(
        self,
        *,
        isrc: str | None = None,
        title: str | None = None,
        artist: str | None = None,
    ) -> str | None:
        """Find a catalog track id by ISRC, falling back to a title/artist search."""
        normalized_isrc = normalize_isrc(isrc)
        if normalized_isrc:
            found = self._search_first_id(f"isrc:{normalized_isrc}")
            if found:
                return found
        clean_title = strip_featuring(title)
        clean_artist = strip_featuring(artist)
        if not clean_title or not clean_artist:
            return None
        found = self._search_first_id(f'track:"{clean_title}" artist:"{clean_artist}"')
        _LOG.info("[SPOTIFY] search isrc=%s title=%s found=%s", normalized_isrc, clean_title, found)
        return found
