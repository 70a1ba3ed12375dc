"""Application settings constants."""

from __future__ import annotations

import os


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# SQLite file holding the tempo/key cache.
DB_PATH = os.getenv("TEMPOCACHE_DB_PATH", os.path.join(os.getcwd(), "tempocache.sqlite3"))

# Directory for the API process log file.
LOG_DIR = os.getenv("TEMPOCACHE_LOG_DIR", os.path.join(os.getcwd(), "logs"))

# Successful records are served from cache for this long.
CACHE_TTL_DAYS = int(os.getenv("TEMPOCACHE_CACHE_TTL_DAYS", "90"))
CACHE_TTL_SECONDS = CACHE_TTL_DAYS * 24 * 60 * 60

# No-preview failures and unresolved identity mismatches are retried after this window.
FAILURE_RETRY_SECONDS = int(os.getenv("TEMPOCACHE_FAILURE_RETRY_SECONDS", "86400"))

# Transient detection-service failures are retried after this window.
DETECTION_RETRY_SECONDS = int(os.getenv("TEMPOCACHE_DETECTION_RETRY_SECONDS", "600"))

# Upper bound for a single preview provider attempt.
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("TEMPOCACHE_PROVIDER_TIMEOUT_SECONDS", "5"))

# Remote tempo/key detection service.
DETECTION_SERVICE_URL = os.getenv("BPM_SERVICE_URL", "").rstrip("/")
DETECTION_TIMEOUT_SECONDS = float(os.getenv("TEMPOCACHE_DETECTION_TIMEOUT_SECONDS", "30"))
DETECTION_MAX_CONFIDENCE = float(os.getenv("TEMPOCACHE_DETECTION_MAX_CONFIDENCE", "0.65"))
DETECTION_DEBUG_LEVEL = os.getenv("TEMPOCACHE_DETECTION_DEBUG_LEVEL", "normal")

# Service account JSON used to mint identity tokens for the detection service.
GCP_SERVICE_ACCOUNT_KEY = os.getenv("GCP_SERVICE_ACCOUNT_KEY", "")

# Request size limits.
ISRC_BATCH_LIMIT = 200
TRACK_BATCH_LIMIT = 100
MISMATCH_LIST_LIMIT = 200

# Storefront used when the caller does not provide one.
DEFAULT_COUNTRY = os.getenv("TEMPOCACHE_DEFAULT_COUNTRY", "us").lower()

# Detection algorithms in precedence order: primary first, then secondary.
DETECTION_ALGORITHMS = ("essentia", "librosa")
PRIMARY_ALGORITHM = DETECTION_ALGORITHMS[0]
SECONDARY_ALGORITHM = DETECTION_ALGORITHMS[1]
MANUAL_SELECTION = "manual"

# Octave-correction window for detected tempo.
TEMPO_MIN = 70.0
TEMPO_MAX = 200.0

SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID", "")
SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET", "")

# Optional HTTP basic auth for the API; disabled when either value is empty.
BASIC_AUTH_USER = os.getenv("TEMPOCACHE_BASIC_AUTH_USER", "")
BASIC_AUTH_PASS = os.getenv("TEMPOCACHE_BASIC_AUTH_PASS", "")

# Accept the caller identity from X-User-Id (only behind a trusted proxy).
TRUST_USER_HEADER = os.getenv("TEMPOCACHE_TRUST_USER_HEADER", "0").strip().lower() in {"1", "true", "yes"}

# Role assignments by user id.
ADMIN_USERS = _csv_env("TEMPOCACHE_ADMIN_USERS")
SUPER_ADMIN_USERS = _csv_env("TEMPOCACHE_SUPER_ADMIN_USERS")
