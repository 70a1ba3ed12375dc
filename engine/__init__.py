from .errors import (
    DetectionUnavailable,
    NoPreviewFound,
    PermissionDenied,
    ProviderUnavailable,
    TempoCacheError,
    ValidationError,
)

__all__ = [
    "DetectionUnavailable",
    "NoPreviewFound",
    "PermissionDenied",
    "ProviderUnavailable",
    "TempoCacheError",
    "ValidationError",
]
