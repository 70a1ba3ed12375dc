import sys
from pathlib import Path

import pytest

# Make the flat top-level packages importable however pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.tempo_cache import TempoCacheStore  # noqa: E402


@pytest.fixture
def tempo_store(tmp_path) -> TempoCacheStore:
    """Empty cache store backed by a throwaway SQLite file."""
    store = TempoCacheStore(str(tmp_path / "tempo.sqlite3"))
    store.ensure_schema()
    return store


@pytest.fixture(autouse=True)
def _isolated_paths(monkeypatch, tmp_path) -> None:
    """Keep default DB and log locations out of the working tree."""
    monkeypatch.setattr("config.settings.DB_PATH", str(tmp_path / "default.sqlite3"))
    monkeypatch.setattr("config.settings.LOG_DIR", str(tmp_path / "logs"))
