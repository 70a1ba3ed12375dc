"""Error taxonomy for tempo/key resolution."""

from __future__ import annotations


NO_PREVIEW_MESSAGE = "No preview audio available from any source"
IDENTITY_MISMATCH_MESSAGE = (
    "ISRC mismatch: Found preview URL but ISRC does not match catalog track (wrong audio file)"
)


class TempoCacheError(Exception):
    """Base class for resolution errors."""


class ValidationError(TempoCacheError, ValueError):
    """Raised when caller input is missing or malformed. Never cached."""


class PermissionDenied(TempoCacheError):
    """Raised when the caller context lacks the role an operation requires."""


class ProviderUnavailable(TempoCacheError):
    """Raised by a preview provider when its lookup fails."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class NoPreviewFound(TempoCacheError):
    """Every preview provider was exhausted without a usable excerpt."""

    kind = "no_preview"

    def __init__(self, message: str = NO_PREVIEW_MESSAGE) -> None:
        super().__init__(message)


class DetectionUnavailable(TempoCacheError):
    """The detection service failed (non-2xx, malformed payload, timeout)."""

    kind = "detection_unavailable"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
