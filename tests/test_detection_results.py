from __future__ import annotations

import pytest

from detection.results import DetectionResult, parse_detection_payload, parse_service_response
from engine.errors import DetectionUnavailable, ValidationError


def test_results_list_form_normalizes_each_algorithm() -> None:
    results = parse_detection_payload(
        {
            "results": [
                {"algorithm": "essentia", "tempo": 64.25, "confidence": 0.9, "key": "A", "scale": "minor", "keyConfidence": 0.7},
                {"algorithm": "librosa", "bpm": 240.0},
            ]
        }
    )

    assert results[0] == DetectionResult(
        algorithm="essentia",
        tempo=128.5,
        tempo_raw=64.25,
        confidence=0.9,
        key="A",
        scale="minor",
        key_confidence=0.7,
    )
    assert results[1].algorithm == "librosa"
    assert results[1].tempo == 120.0
    assert results[1].tempo_raw == 240.0


def test_flat_per_algorithm_form() -> None:
    results = parse_detection_payload(
        {
            "index": 0,
            "bpm_essentia": 128.0,
            "bpm_raw_essentia": 128.04,
            "bpm_confidence_essentia": 0.8,
            "key_essentia": "C#",
            "scale_essentia": "major",
            "keyscale_confidence_essentia": 0.6,
            "bpm_librosa": None,
        }
    )

    assert [result.algorithm for result in results] == ["essentia"]
    assert results[0].tempo == 128.0
    assert results[0].tempo_raw == 128.04
    assert results[0].key == "C#"


def test_single_result_defaults_to_primary_algorithm() -> None:
    results = parse_detection_payload({"tempo": 90, "confidence": 0.5})

    assert len(results) == 1
    assert results[0].algorithm == "essentia"
    assert results[0].tempo == 90.0


def test_unusable_tempo_is_dropped() -> None:
    assert parse_detection_payload({"tempo": 0}) == []
    assert parse_detection_payload({"tempo": "fast"}) == []


def test_unknown_algorithm_and_non_object_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_detection_payload({"algorithm": "madmom", "tempo": 120})
    with pytest.raises(ValidationError):
        parse_detection_payload(["tempo", 120])


def test_service_payload_errors_become_detection_unavailable() -> None:
    with pytest.raises(DetectionUnavailable):
        parse_service_response("nope")


def test_cache_update_only_touches_own_columns() -> None:
    update = DetectionResult(algorithm="librosa", tempo=120.0, tempo_raw=60.0, confidence=0.4).cache_update()

    assert update == {
        "tempo_librosa": 120.0,
        "tempo_raw_librosa": 60.0,
        "tempo_confidence_librosa": 0.4,
    }
