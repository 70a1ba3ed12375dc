"""iTunes storefront lookups: by ISRC and by artist/title text search."""

from __future__ import annotations

import os
from typing import Any

from engine.identifiers import TrackIdentifiers, normalize_isrc
from engine.text_matching import strip_featuring
from previews.providers.base import HttpPreviewProvider, PreviewCandidate

ITUNES_BASE_URL = os.getenv("ITUNES_BASE_URL", "https://itunes.apple.com").rstrip("/")


def _candidate_from_results(provider: str, payload: dict[str, Any]) -> PreviewCandidate:
    results = payload.get("results") if isinstance(payload.get("results"), list) else []
    for item in results:
        if not isinstance(item, dict):
            continue
        url = str(item.get("previewUrl") or "").strip()
        if not url:
            continue
        return PreviewCandidate(
            provider=provider,
            success=True,
            url=url,
            detected_isrc=normalize_isrc(item.get("isrc")),
            detected_title=item.get("trackName"),
            detected_artist=item.get("artistName"),
        )
    return PreviewCandidate(provider=provider, success=False, error="no preview in results")


class ItunesIsrcProvider(HttpPreviewProvider):
    name = "itunes_isrc"

    def lookup(self, ids: TrackIdentifiers, *, country: str) -> PreviewCandidate | None:
        if not ids.isrc:
            return None
        payload = self._request_json(
            f"{ITUNES_BASE_URL}/lookup",
            {"isrc": ids.isrc, "country": country},
        )
        candidate = _candidate_from_results(self.name, payload)
        if candidate.success and not candidate.detected_isrc:
            # The lookup is keyed by ISRC, so the hit carries the requested one.
            return PreviewCandidate(
                provider=candidate.provider,
                success=True,
                url=candidate.url,
                detected_isrc=ids.isrc,
                detected_title=candidate.detected_title,
                detected_artist=candidate.detected_artist,
            )
        return candidate


class ItunesSearchProvider(HttpPreviewProvider):
    name = "itunes_search"

    def lookup(self, ids: TrackIdentifiers, *, country: str) -> PreviewCandidate | None:
        title = strip_featuring(ids.title)
        if not title:
            return None
        term = " ".join(part for part in (ids.artist_text, title) if part)
        payload = self._request_json(
            f"{ITUNES_BASE_URL}/search",
            {"term": term, "entity": "song", "limit": 1, "country": country},
        )
        return _candidate_from_results(self.name, payload)
