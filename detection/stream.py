"""Restartable read-back of batch results."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterator

import requests

from detection.client import DetectionBackend
from engine.errors import DetectionUnavailable

logger = logging.getLogger(__name__)

_DONE_STATUSES = {"completed", "complete", "done", "finished", "failed"}
_DONE_TYPES = {"done", "complete", "end"}


def record_index(record: dict[str, Any]) -> int | None:
    value = record.get("index")
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_end_marker(record: dict[str, Any]) -> bool:
    return str(record.get("type") or "").lower() in _DONE_TYPES or record.get("done") is True


class BatchResultStream:
    """Per-track result records for a batch, streamed with a polling fallback.

    Iterating starts (or restarts) the stream and yields only records whose
    index has not been yielded before. An interrupted or short stream falls back
    to polling the batch. `close()` stops iteration and releases the open response.
    """

    def __init__(
        self,
        backend: DetectionBackend,
        batch_id: str,
        *,
        expected: int | None = None,
        poll_interval: float = 2.0,
        max_polls: int = 150,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.batch_id = batch_id
        self.expected = expected
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self.seen: set[int] = set()
        self.completed = False
        self._closed = False
        self._source: Iterator[dict[str, Any]] | None = None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return self._records()

    def close(self) -> None:
        self._closed = True
        source = self._source
        if source is not None and not getattr(source, "gi_running", False):
            close = getattr(source, "close", None)
            if callable(close):
                close()

    def _fresh(self, record: dict[str, Any]) -> bool:
        index = record_index(record)
        if index is None or index in self.seen:
            return False
        self.seen.add(index)
        return True

    def _satisfied(self) -> bool:
        return self.expected is not None and len(self.seen) >= self.expected

    def _records(self) -> Iterator[dict[str, Any]]:
        self._closed = False
        self.completed = False
        interrupted = False
        try:
            self._source = self.backend.stream_batch(self.batch_id)
            for record in self._source:
                if self._closed:
                    return
                if _is_end_marker(record):
                    break
                if self._fresh(record):
                    yield record
        except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError, DetectionUnavailable) as exc:
            logger.warning("[DETECTION] stream interrupted batch_id=%s seen=%s error=%s", self.batch_id, len(self.seen), exc)
            interrupted = True
        finally:
            if self._source is not None and hasattr(self._source, "close"):
                self._source.close()
            self._source = None
        if self._closed:
            return
        if not interrupted and (self.expected is None or self._satisfied()):
            self.completed = True
            return
        yield from self._poll()

    def _poll(self) -> Iterator[dict[str, Any]]:
        for attempt in range(self.max_polls):
            if self._closed:
                return
            payload = self.backend.poll_batch(self.batch_id)
            results = payload.get("results") if isinstance(payload.get("results"), list) else []
            for record in results:
                if isinstance(record, dict) and self._fresh(record):
                    yield record
                    if self._closed:
                        return
            status = str(payload.get("status") or "").lower()
            if status in _DONE_STATUSES or self._satisfied():
                self.completed = True
                logger.info("[DETECTION] poll complete batch_id=%s polls=%s seen=%s", self.batch_id, attempt + 1, len(self.seen))
                return
            self._sleep(self.poll_interval)
        logger.warning("[DETECTION] poll gave up batch_id=%s seen=%s", self.batch_id, len(self.seen))
