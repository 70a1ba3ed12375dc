from __future__ import annotations

from engine.identifiers import TrackIdentifiers
from previews.providers.base import PreviewCandidate


class CatalogPreviewProvider:
    """Preview URL shipped on the catalog track itself; trusted as-is."""

    name = "spotify_preview"

    def lookup(self, ids: TrackIdentifiers, *, country: str) -> PreviewCandidate | None:
        if not ids.catalog_preview_url:
            return None
        return PreviewCandidate(
            provider=self.name,
            success=True,
            url=ids.catalog_preview_url,
            detected_isrc=ids.isrc,
            detected_title=ids.title,
            detected_artist=ids.artist_display,
        )
