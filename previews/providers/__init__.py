"""Preview providers in priority order."""

from previews.providers.base import PreviewCandidate, PreviewProvider
from previews.providers.catalog import CatalogPreviewProvider
from previews.providers.deezer import DeezerSearchProvider
from previews.providers.itunes import ItunesIsrcProvider, ItunesSearchProvider

# Providers whose hit is keyed by the requested recording rather than by text search.
ISRC_KEYED_PROVIDERS = (CatalogPreviewProvider.name, ItunesIsrcProvider.name)


def default_providers() -> list[PreviewProvider]:
    return [
        CatalogPreviewProvider(),
        ItunesIsrcProvider(),
        ItunesSearchProvider(),
        DeezerSearchProvider(),
    ]


__all__ = [
    "CatalogPreviewProvider",
    "DeezerSearchProvider",
    "ISRC_KEYED_PROVIDERS",
    "ItunesIsrcProvider",
    "ItunesSearchProvider",
    "PreviewCandidate",
    "PreviewProvider",
    "default_providers",
]
