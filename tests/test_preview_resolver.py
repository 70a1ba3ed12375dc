from __future__ import annotations

import asyncio
import time

from engine.errors import ProviderUnavailable
from engine.identifiers import TrackIdentifiers
from previews.providers.base import PreviewCandidate
from previews.resolver import SOURCE_FAILED, PreviewResolver

IDS = TrackIdentifiers(track_id="track-1", isrc="ISRC1", title="Song", artists=("Artist",))


class _MockProvider:
    def __init__(self, name: str, outcome, calls: list[str], delay: float = 0.0) -> None:
        self.name = name
        self.outcome = outcome
        self.calls = calls
        self.delay = delay

    def lookup(self, ids, *, country):
        self.calls.append(self.name)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _ok(name: str) -> PreviewCandidate:
    return PreviewCandidate(provider=name, success=True, url=f"https://{name}/p.mp3")


def test_first_success_wins_and_later_providers_not_tried() -> None:
    calls: list[str] = []
    resolver = PreviewResolver(
        [
            _MockProvider("a", None, calls),
            _MockProvider("b", ProviderUnavailable("b", "http 500"), calls),
            _MockProvider("c", _ok("c"), calls),
            _MockProvider("d", _ok("d"), calls),
        ]
    )

    result = asyncio.run(resolver.resolve(IDS, country="us"))

    assert calls == ["a", "b", "c"]
    assert result.source == "c"
    assert result.url == "https://c/p.mp3"
    assert [(c.provider, c.success) for c in result.candidates] == [("b", False), ("c", True)]
    assert result.candidates[0].error == "http 500"


def test_all_failing_is_computed_failed_with_every_attempt_recorded() -> None:
    calls: list[str] = []
    resolver = PreviewResolver(
        [
            _MockProvider("a", PreviewCandidate(provider="a", success=False, error="no preview in results"), calls),
            _MockProvider("b", ValueError("bad payload"), calls),
        ]
    )

    result = asyncio.run(resolver.resolve(IDS, country="us"))

    assert result.url is None
    assert result.source == SOURCE_FAILED
    assert result.found is False
    assert [c.provider for c in result.candidates] == ["a", "b"]
    assert result.candidates[1].error == "bad payload"


def test_timeout_is_a_failed_attempt_and_resolution_continues() -> None:
    calls: list[str] = []
    resolver = PreviewResolver(
        [
            _MockProvider("slow", _ok("slow"), calls, delay=0.3),
            _MockProvider("fast", _ok("fast"), calls),
        ],
        timeout_seconds=0.05,
    )

    result = asyncio.run(resolver.resolve(IDS, country="us"))

    assert result.source == "fast"
    assert result.candidates[0].provider == "slow"
    assert result.candidates[0].error == "timeout"
    assert result.candidates[0].success is False
