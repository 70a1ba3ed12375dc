from __future__ import annotations

from previews.country import country_from_accept_language, normalize_country


def test_region_subtag_wins() -> None:
    assert country_from_accept_language("de-AT,de;q=0.9,en;q=0.8") == "at"


def test_bare_language_maps_to_storefront() -> None:
    assert country_from_accept_language("ja") == "jp"


def test_missing_header_uses_default() -> None:
    assert country_from_accept_language(None) == "us"
    assert country_from_accept_language("*") == "us"


def test_normalize_country_rejects_garbage() -> None:
    assert normalize_country("GB") == "gb"
    assert normalize_country("not-a-country") == "us"
