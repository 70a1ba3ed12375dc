"""Database helpers for tempocache."""

from db.tempo_cache import AlgorithmValues, CacheRecord, TempoCacheStore

__all__ = ["AlgorithmValues", "CacheRecord", "TempoCacheStore"]
