from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from engine.errors import ValidationError


def _strip_or_none(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


@dataclass(frozen=True)
class TrackIdentifiers:
    track_id: str
    isrc: str | None
    title: str
    artists: tuple[str, ...]
    catalog_preview_url: str | None = None

    @property
    def artist_text(self) -> str:
        return " ".join(self.artists)

    @property
    def artist_display(self) -> str:
        return ", ".join(self.artists)

    @property
    def primary_artist(self) -> str:
        return self.artists[0] if self.artists else ""


def normalize_isrc(value: Any) -> str | None:
    text = _strip_or_none(value)
    return text.upper() if text else None


def _artist_names(raw: Any) -> tuple[str, ...]:
    names: list[str] = []
    for artist in raw or []:
        if isinstance(artist, dict):
            name = _strip_or_none(artist.get("name"))
        else:
            name = _strip_or_none(artist)
        if name:
            names.append(name)
    return tuple(names)


def extract_identifiers(track: dict[str, Any]) -> TrackIdentifiers:
    """Derive the cache key set from a catalog track object."""
    if not isinstance(track, dict):
        raise ValidationError("track must be an object")
    track_id = _strip_or_none(track.get("id"))
    if not track_id:
        raise ValidationError("trackId is required")
    external_ids = track.get("external_ids") if isinstance(track.get("external_ids"), dict) else {}
    return TrackIdentifiers(
        track_id=track_id,
        isrc=normalize_isrc(external_ids.get("isrc") or track.get("isrc")),
        title=_strip_or_none(track.get("name")) or "",
        artists=_artist_names(track.get("artists")),
        catalog_preview_url=_strip_or_none(track.get("preview_url")),
    )
