from __future__ import annotations

import re
import unicodedata
from typing import Iterable

_BRACKETED_SEGMENT_RE = re.compile(r"[\(\[\{][^)\]\}]*[\)\]\}]")
_FEATURING_RE = re.compile(r"\s+[\(\[]?(?:feat\.?|ft\.?|featuring)\s+.*$", re.IGNORECASE)
_DASH_SUFFIX_RE = re.compile(r"\s+-\s+.*$")
_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_phrase(value: str | None) -> str:
    text = unicodedata.normalize("NFKC", str(value or "")).lower().strip()
    text = _NON_ALNUM_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def strip_featuring(value: str | None) -> str:
    """Drop a trailing `feat. X` credit, e.g. for catalog searches."""
    text = _FEATURING_RE.sub("", str(value or ""))
    return _WS_RE.sub(" ", text).strip()


def core_title(value: str | None) -> str:
    """Title without bracketed qualifiers, dash suffixes or featuring credits."""
    raw = unicodedata.normalize("NFKC", str(value or ""))
    stripped = _BRACKETED_SEGMENT_RE.sub(" ", raw)
    stripped = _DASH_SUFFIX_RE.sub("", stripped)
    return normalize_phrase(strip_featuring(stripped))


def titles_match(expected: str | None, detected: str | None) -> bool:
    left = core_title(expected)
    right = core_title(detected)
    if not left or not right:
        return True
    return left == right or left in right or right in left


def artists_match(expected: Iterable[str], detected: str | None) -> bool:
    """True when any requested artist appears in the detected artist credit."""
    detected_norm = normalize_phrase(detected)
    expected_norm = [normalize_phrase(name) for name in expected if normalize_phrase(name)]
    if not detected_norm or not expected_norm:
        return True
    return any(name in detected_norm or detected_norm in name for name in expected_norm)
