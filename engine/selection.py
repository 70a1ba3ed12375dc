"""Pick the authoritative tempo and key/scale from a cache record."""

from __future__ import annotations

from dataclasses import dataclass

from config.settings import DETECTION_ALGORITHMS, MANUAL_SELECTION
from db.tempo_cache import CacheRecord
from engine.errors import IDENTITY_MISMATCH_MESSAGE


@dataclass(frozen=True)
class Selection:
    tempo: float | None = None
    tempo_raw: float | None = None
    tempo_confidence: float | None = None
    tempo_source: str | None = None
    key: str | None = None
    scale: str | None = None
    key_confidence: float | None = None
    key_source: str | None = None
    suppressed: bool = False
    error: str | None = None


def _tempo_order(record: CacheRecord) -> list[str]:
    order = list(DETECTION_ALGORITHMS)
    if record.tempo_selected in order:
        order.remove(record.tempo_selected)
        order.insert(0, record.tempo_selected)
    return order


def _key_order(record: CacheRecord) -> list[str]:
    order = list(DETECTION_ALGORITHMS)
    if record.key_selected in order:
        order.remove(record.key_selected)
        order.insert(0, record.key_selected)
    return order


def _select_tempo(record: CacheRecord) -> tuple[float | None, float | None, float | None, str | None]:
    if record.tempo_selected == MANUAL_SELECTION and record.tempo_manual is not None:
        return record.tempo_manual, None, None, MANUAL_SELECTION
    for algorithm in _tempo_order(record):
        values = record.algorithm(algorithm)
        if values.has_tempo:
            return values.tempo, values.tempo_raw, values.tempo_confidence, algorithm
    return None, None, None, None


def _select_key(record: CacheRecord) -> tuple[str | None, str | None, float | None, str | None]:
    if record.key_selected == MANUAL_SELECTION and record.key_manual:
        return record.key_manual, record.scale_manual, None, MANUAL_SELECTION
    for algorithm in _key_order(record):
        values = record.algorithm(algorithm)
        if values.has_key:
            return values.key, values.scale, values.key_confidence, algorithm
    return None, None, None, None


def select(record: CacheRecord) -> Selection:
    """Resolve tempo and key independently; an unresolved identity mismatch hides tempo only."""
    key, scale, key_confidence, key_source = _select_key(record)
    if record.isrc_mismatch:
        return Selection(
            key=key,
            scale=scale,
            key_confidence=key_confidence,
            key_source=key_source,
            suppressed=True,
            error=IDENTITY_MISMATCH_MESSAGE,
        )
    tempo, tempo_raw, tempo_confidence, tempo_source = _select_tempo(record)
    return Selection(
        tempo=tempo,
        tempo_raw=tempo_raw,
        tempo_confidence=tempo_confidence,
        tempo_source=tempo_source,
        key=key,
        scale=scale,
        key_confidence=key_confidence,
        key_source=key_source,
        error=record.error,
    )
