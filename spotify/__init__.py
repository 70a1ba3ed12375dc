"""Spotify integration modules."""

from spotify.client import SpotifyRequestError, SpotifyTrackClient

__all__ = ["SpotifyRequestError", "SpotifyTrackClient"]
