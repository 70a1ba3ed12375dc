from __future__ import annotations

import os

from engine.identifiers import TrackIdentifiers, normalize_isrc
from engine.text_matching import strip_featuring
from previews.providers.base import HttpPreviewProvider, PreviewCandidate

DEEZER_BASE_URL = os.getenv("DEEZER_BASE_URL", "https://api.deezer.com").rstrip("/")


class DeezerSearchProvider(HttpPreviewProvider):
    name = "deezer_search"

    def lookup(self, ids: TrackIdentifiers, *, country: str) -> PreviewCandidate | None:
        title = strip_featuring(ids.title)
        if not title:
            return None
        query = f'track:"{title}"'
        if ids.primary_artist:
            query = f'artist:"{ids.primary_artist}" {query}'
        payload = self._request_json(f"{DEEZER_BASE_URL}/search", {"q": query, "limit": 1})
        data = payload.get("data") if isinstance(payload.get("data"), list) else []
        for item in data:
            if not isinstance(item, dict):
                continue
            url = str(item.get("preview") or "").strip()
            if not url:
                continue
            artist = item.get("artist") if isinstance(item.get("artist"), dict) else {}
            return PreviewCandidate(
                provider=self.name,
                success=True,
                url=url,
                detected_isrc=normalize_isrc(item.get("isrc")),
                detected_title=item.get("title"),
                detected_artist=artist.get("name"),
            )
        return PreviewCandidate(provider=self.name, success=False, error="no preview in results")
