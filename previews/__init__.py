"""Preview excerpt discovery."""

from previews.resolver import SOURCE_FAILED, PreviewResolution, PreviewResolver

__all__ = ["SOURCE_FAILED", "PreviewResolution", "PreviewResolver"]
