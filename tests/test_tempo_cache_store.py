from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from db.tempo_cache import TempoCacheStore


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_merge_creates_record_with_default_selection(tempo_store) -> None:
    store = tempo_store

    record = store.merge(
        "track-1",
        {"isrc": "ISRC1", "tempo_librosa": 121.0, "tempo_raw_librosa": 60.5},
        now=NOW,
    )

    assert record.track_id == "track-1"
    assert record.tempo_selected == "librosa"
    assert record.key_selected == "essentia"
    assert record.secondary.tempo == 121.0
    assert record.primary.tempo is None
    assert record.updated_at == NOW


def test_merge_one_algorithm_keeps_the_other(tempo_store) -> None:
    store = tempo_store
    store.merge(
        "track-1",
        {"tempo_essentia": 128.0, "tempo_raw_essentia": 64.0, "key_essentia": "A", "scale_essentia": "minor"},
        now=NOW,
    )

    record = store.merge("track-1", {"tempo_librosa": 127.5, "key_librosa": "C"}, now=NOW)

    assert record.primary.tempo == 128.0
    assert record.primary.tempo_raw == 64.0
    assert record.primary.key == "A"
    assert record.secondary.tempo == 127.5
    assert record.secondary.key == "C"


def test_merge_leaves_manual_and_review_fields_alone(tempo_store) -> None:
    store = tempo_store
    store.merge("track-1", {"tempo_essentia": 128.0, "tempo_manual": 90.0, "isrc_mismatch": True}, now=NOW)
    store.set_review("track-1", "match", "admin-1", NOW)

    record = store.merge("track-1", {"tempo_essentia": 129.0, "isrc_mismatch": True}, now=NOW)

    assert record.tempo_manual == 90.0
    assert record.mismatch_review_status == "match"
    assert record.mismatch_reviewed_by == "admin-1"
    assert record.isrc_mismatch_detected is True
    assert record.isrc_mismatch is False


def test_merge_rejects_unknown_and_review_fields(tempo_store) -> None:
    store = tempo_store

    with pytest.raises(ValueError):
        store.merge("track-1", {"bogus": 1})
    with pytest.raises(ValueError):
        store.merge("track-1", {"mismatch_review_status": "match"})
    with pytest.raises(ValueError):
        store.merge("track-1", {"tempo_selected": "aubio"})
    assert store.get("track-1") is None


def test_merge_without_touch_keeps_updated_at(tempo_store) -> None:
    store = tempo_store
    store.merge("track-1", {"tempo_essentia": 128.0}, now=NOW)

    record = store.merge("track-1", {"tempo_selected": "essentia"}, now=NOW + timedelta(days=5), touch=False)

    assert record.updated_at == NOW


def test_preview_candidates_round_trip_as_list(tempo_store) -> None:
    store = tempo_store
    candidates = [
        {"provider": "itunes_isrc", "success": False, "url": None, "error": "http 500"},
        {"provider": "itunes_search", "success": True, "url": "https://x/p.m4a", "detected_isrc": "ISRC2"},
    ]

    store.merge("track-1", {"preview_candidates": candidates}, now=NOW)
    record = store.merge("track-1", {"preview_candidates": candidates[1:]}, now=NOW)

    assert [item["provider"] for item in record.preview_candidates] == ["itunes_search"]


def test_get_batch_newest_record_wins_and_missing_absent(tempo_store) -> None:
    store = tempo_store
    store.merge("old", {"isrc": "ISRC1", "tempo_essentia": 100.0}, now=NOW - timedelta(days=3))
    store.merge("new", {"isrc": "ISRC1", "tempo_essentia": 101.0}, now=NOW)
    store.merge("other", {"isrc": "ISRC2", "tempo_essentia": 102.0}, now=NOW)

    result = store.get_batch(["isrc1", "ISRC2", "ISRC3"])

    assert set(result) == {"ISRC1", "ISRC2"}
    assert result["ISRC1"].track_id == "new"
    assert result["ISRC2"].track_id == "other"


def test_delete_removes_records(tempo_store) -> None:
    store = tempo_store
    store.merge("a", {"tempo_essentia": 100.0}, now=NOW)
    store.merge("b", {"tempo_essentia": 100.0}, now=NOW)

    assert store.delete(["a", "missing"]) == 1
    assert store.get("a") is None
    assert store.get("b") is not None


def test_list_mismatches_includes_flagged_and_reviewed(tempo_store) -> None:
    store = tempo_store
    store.merge("clean", {"tempo_essentia": 100.0}, now=NOW)
    store.merge("flagged", {"tempo_essentia": 100.0, "isrc_mismatch": True}, now=NOW)
    store.merge("reviewed", {"tempo_essentia": 100.0}, now=NOW)
    store.set_review("reviewed", "mismatch", "admin-1", NOW)

    ids = {record.track_id for record in store.list_mismatches()}

    assert ids == {"flagged", "reviewed"}


def test_review_does_not_touch_updated_at_and_clear_resets(tempo_store) -> None:
    store = tempo_store
    store.merge("track-1", {"tempo_essentia": 100.0, "isrc_mismatch": True}, now=NOW)

    reviewed = store.set_review("track-1", "match", "admin-1", NOW + timedelta(days=1))
    assert reviewed is not None
    assert reviewed.updated_at == NOW
    assert reviewed.mismatch_reviewed_at == NOW + timedelta(days=1)

    cleared = store.clear_review("track-1")
    assert cleared is not None
    assert cleared.mismatch_review_status is None
    assert cleared.isrc_mismatch is True


def test_set_review_on_missing_record_returns_none(tempo_store) -> None:
    store = tempo_store

    assert store.set_review("missing", "match", "admin-1") is None


def test_default_selection_follows_late_primary_values(tempo_store) -> None:
    store = tempo_store
    first = store.merge("track-9", {"tempo_librosa": 100.0, "key_librosa": "C"}, now=NOW)
    assert first.tempo_selected == "librosa"

    record = store.merge("track-9", {"tempo_essentia": 120.0, "key_essentia": "A"}, now=NOW)

    assert record.tempo_selected == "essentia"
    assert record.key_selected == "essentia"
    assert record.tempo_pinned is False


def test_explicit_selection_survives_later_values(tempo_store) -> None:
    store = tempo_store
    store.merge("track-9", {"tempo_librosa": 100.0}, now=NOW)
    pinned = store.merge("track-9", {"tempo_selected": "librosa"}, now=NOW, touch=False)
    assert pinned.tempo_pinned is True

    record = store.merge("track-9", {"tempo_essentia": 120.0, "key_essentia": "A"}, now=NOW)

    assert record.tempo_selected == "librosa"
    assert record.key_selected == "essentia"
    assert record.key_pinned is False


def test_concurrent_first_reads_on_new_file_migrate_once(tmp_path) -> None:
    store = TempoCacheStore(str(tmp_path / "fresh.sqlite3"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(store.get, [f"track-{index}" for index in range(8)]))

    assert results == [None] * 8
    assert store.merge("track-1", {"tempo_essentia": 128.0}, now=NOW).primary.tempo == 128.0


def test_separate_stores_on_one_new_file_do_not_race(tmp_path) -> None:
    path = str(tmp_path / "shared.sqlite3")
    stores = [TempoCacheStore(path) for _ in range(6)]

    async def read_all() -> list:
        return await asyncio.gather(*(asyncio.to_thread(store.get, "track-1") for store in stores))

    assert asyncio.run(read_all()) == [None] * 6
