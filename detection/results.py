"""Parsing of detection-service payloads into per-algorithm results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from config.settings import DETECTION_ALGORITHMS, PRIMARY_ALGORITHM
from engine.errors import DetectionUnavailable, ValidationError
from engine.normalize import as_float, normalize_confidence, normalize_key, normalize_scale, normalize_tempo


@dataclass(frozen=True)
class DetectionResult:
    algorithm: str
    tempo: float | None = None
    tempo_raw: float | None = None
    confidence: float | None = None
    key: str | None = None
    scale: str | None = None
    key_confidence: float | None = None

    @property
    def empty(self) -> bool:
        return self.tempo is None and not self.key

    def cache_update(self) -> dict[str, Any]:
        """Column values for this algorithm only; never touches other detectors' fields."""
        suffix = self.algorithm
        update: dict[str, Any] = {}
        if self.tempo is not None or self.tempo_raw is not None:
            update[f"tempo_{suffix}"] = self.tempo
            update[f"tempo_raw_{suffix}"] = self.tempo_raw
            update[f"tempo_confidence_{suffix}"] = self.confidence
        if self.key or self.scale:
            update[f"key_{suffix}"] = self.key
            update[f"scale_{suffix}"] = self.scale
            update[f"key_confidence_{suffix}"] = self.key_confidence
        return update


def _first(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _build(algorithm: str, raw_tempo: Any, normalized: Any, confidence: Any, key: Any, scale: Any, key_confidence: Any) -> DetectionResult:
    tempo_raw = as_float(raw_tempo if raw_tempo is not None else normalized)
    tempo = normalize_tempo(normalized if normalized is not None else raw_tempo)
    return DetectionResult(
        algorithm=algorithm,
        tempo=tempo,
        tempo_raw=tempo_raw if tempo is not None else None,
        confidence=normalize_confidence(confidence) if tempo is not None else None,
        key=normalize_key(key),
        scale=normalize_scale(scale),
        key_confidence=normalize_confidence(key_confidence),
    )


def _parse_single(item: dict[str, Any], default_algorithm: str) -> DetectionResult:
    algorithm = str(item.get("algorithm") or default_algorithm).strip().lower()
    if algorithm not in DETECTION_ALGORITHMS:
        raise ValidationError(f"unknown algorithm: {algorithm}")
    return _build(
        algorithm,
        _first(item, "tempo_raw", "tempoRaw", "bpm_raw"),
        _first(item, "tempo", "bpm"),
        _first(item, "confidence", "tempo_confidence", "bpm_confidence"),
        item.get("key"),
        item.get("scale"),
        _first(item, "key_confidence", "keyConfidence", "keyscale_confidence"),
    )


def _parse_suffixed(payload: dict[str, Any]) -> list[DetectionResult]:
    results: list[DetectionResult] = []
    for algorithm in DETECTION_ALGORITHMS:
        result = _build(
            algorithm,
            payload.get(f"bpm_raw_{algorithm}"),
            payload.get(f"bpm_{algorithm}"),
            payload.get(f"bpm_confidence_{algorithm}"),
            payload.get(f"key_{algorithm}"),
            payload.get(f"scale_{algorithm}"),
            payload.get(f"keyscale_confidence_{algorithm}"),
        )
        if not result.empty:
            results.append(result)
    return results


def _has_suffixed_fields(payload: dict[str, Any]) -> bool:
    return any(
        f"{stem}_{algorithm}" in payload
        for algorithm in DETECTION_ALGORITHMS
        for stem in ("bpm", "key")
    )


def parse_detection_payload(
    payload: Any,
    *,
    default_algorithm: str = PRIMARY_ALGORITHM,
) -> list[DetectionResult]:
    """Accept the `results` list form, the flat per-algorithm form, or a single result.

    Raises ValidationError when the payload has no usable shape.
    """
    if not isinstance(payload, dict):
        raise ValidationError("result must be an object")
    if isinstance(payload.get("results"), list):
        parsed = [
            _parse_single(item, default_algorithm)
            for item in payload["results"]
            if isinstance(item, dict)
        ]
        return [result for result in parsed if not result.empty]
    if _has_suffixed_fields(payload):
        return _parse_suffixed(payload)
    result = _parse_single(payload, default_algorithm)
    return [] if result.empty else [result]


def parse_service_response(payload: Any) -> list[DetectionResult]:
    """Like parse_detection_payload, but a bad service payload is a DetectionUnavailable."""
    try:
        return parse_detection_payload(payload)
    except ValidationError as exc:
        raise DetectionUnavailable(f"malformed detection payload: {exc}") from exc
