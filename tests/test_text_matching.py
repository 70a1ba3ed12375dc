from __future__ import annotations

from engine.text_matching import artists_match, core_title, strip_featuring, titles_match


def test_strip_featuring_handles_bare_and_bracketed_credits() -> None:
    assert strip_featuring("Song A feat. Guest") == "Song A"
    assert strip_featuring("Song A (ft. Guest)") == "Song A"
    assert strip_featuring("Song A [featuring Guest]") == "Song A"
    assert strip_featuring("Feather") == "Feather"


def test_core_title_drops_qualifiers() -> None:
    assert core_title("Song A (Remastered 2011)") == "song a"
    assert core_title("Song A - Radio Edit") == "song a"
    assert core_title("  SONG   a ") == "song a"


def test_titles_match_allows_containment_and_blanks() -> None:
    assert titles_match("Song A", "Song A (Live)") is True
    assert titles_match("Song A", "") is True
    assert titles_match("Song A", "Different") is False


def test_artists_match_any_requested_artist() -> None:
    assert artists_match(["Artist A", "Guest"], "Guest & Friends") is True
    assert artists_match(["Artist A"], "Somebody Else") is False
