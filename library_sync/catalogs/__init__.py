from .base import (
    CatalogClient,
    CatalogError,
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
)
from .discogs import DiscogsClient
from .musicbrainz import MusicBrainzClient

__all__ = [
    "CatalogClient",
    "CatalogError",
    "DiscogsClient",
    "MalformedResponseError",
    "MusicBrainzClient",
    "NetworkError",
    "RateLimitedError",
    "UnauthorizedError",
]
