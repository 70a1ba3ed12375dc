from __future__ import annotations

import math

import pytest

from engine.normalize import normalize_key, normalize_tempo


def test_tempo_below_window_is_doubled_once() -> None:
    assert normalize_tempo(64.25) == 128.5


def test_tempo_far_below_window_is_doubled_until_in_range() -> None:
    assert normalize_tempo(30) == 120.0


def test_tempo_above_window_is_halved() -> None:
    assert normalize_tempo(260) == 130.0
    assert normalize_tempo(801) == 100.1


def test_tempo_in_window_is_rounded_half_up() -> None:
    assert normalize_tempo(120.05) == 120.1
    assert normalize_tempo(70) == 70.0
    assert normalize_tempo(200) == 200.0


@pytest.mark.parametrize("raw", [63.7, 99.99, 150.0, 240.4, 17.3])
def test_normalized_tempo_is_in_window_and_idempotent(raw: float) -> None:
    once = normalize_tempo(raw)
    assert once is not None
    assert 70 <= once <= 200
    assert normalize_tempo(once) == once


@pytest.mark.parametrize("raw", [None, 0, -10, "abc", math.inf, math.nan, True])
def test_unfoldable_values_return_none(raw) -> None:
    assert normalize_tempo(raw) is None


def test_key_passes_through_and_blank_becomes_none() -> None:
    assert normalize_key("F#") == "F#"
    assert normalize_key("   ") is None
