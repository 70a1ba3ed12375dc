from __future__ import annotations

import re

from config.settings import DEFAULT_COUNTRY

# Bare language tags that imply a storefront.
_LANGUAGE_COUNTRIES = {
    "en": "us",
    "de": "de",
    "fr": "fr",
    "es": "es",
    "it": "it",
    "nl": "nl",
    "pt": "br",
    "ja": "jp",
    "ko": "kr",
    "sv": "se",
    "da": "dk",
    "nb": "no",
    "no": "no",
    "fi": "fi",
    "pl": "pl",
}
_REGION_RE = re.compile(r"^[a-z]{2,3}[-_]([a-z]{2})$")


def country_from_accept_language(header: str | None, default: str = DEFAULT_COUNTRY) -> str:
    """Map the first usable Accept-Language entry to a two-letter storefront code."""
    for entry in str(header or "").split(","):
        tag = entry.split(";", 1)[0].strip().lower()
        if not tag or tag == "*":
            continue
        match = _REGION_RE.match(tag)
        if match:
            return match.group(1)
        if tag in _LANGUAGE_COUNTRIES:
            return _LANGUAGE_COUNTRIES[tag]
    return default


def normalize_country(value: str | None, default: str = DEFAULT_COUNTRY) -> str:
    text = str(value or "").strip().lower()
    return text if re.fullmatch(r"[a-z]{2}", text) else default
