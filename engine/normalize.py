"""Octave correction and precision rounding for detected tempo values."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from config.settings import TEMPO_MAX, TEMPO_MIN


def as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def round_tempo(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def normalize_tempo(raw: Any, *, low: float = TEMPO_MIN, high: float = TEMPO_MAX) -> float | None:
    """Fold `raw` into [low, high] by doubling/halving, then round to one decimal.

    Returns None for values that cannot be folded (missing, non-numeric, non-positive).
    """
    value = as_float(raw)
    if value is None or value <= 0:
        return None
    while value < low:
        value *= 2
    while value > high:
        value /= 2
    return round_tempo(value)


def normalize_confidence(value: Any) -> float | None:
    return as_float(value)


def normalize_key(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


normalize_scale = normalize_key
