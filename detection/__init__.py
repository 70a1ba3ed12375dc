"""Remote tempo/key detection."""

from detection.client import DetectionBackend, RemoteDetectionClient, get_detection_client
from detection.results import DetectionResult, parse_detection_payload
from detection.stream import BatchResultStream

__all__ = [
    "BatchResultStream",
    "DetectionBackend",
    "DetectionResult",
    "RemoteDetectionClient",
    "get_detection_client",
    "parse_detection_payload",
]
