from __future__ import annotations

import abc
from typing import List, Optional

import httpx

from library_sync.models import Candidate, Provider, SearchQuery, Track
from library_sync.rate_limit import RateLimiter

MAX_CANDIDATES = 5


class CatalogError(Exception):
    """Unexpected catalog response that is neither transient nor an auth failure."""

    code = "catalog"


class RateLimitedError(CatalogError):
    """The catalog asked us to slow down."""

    code = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UnauthorizedError(CatalogError):
    """Credentials are missing or were rejected."""

    code = "unauthorized"


class NetworkError(CatalogError):
    """Transport failure, timeout or server-side error."""

    code = "network"


class MalformedResponseError(CatalogError):
    """The response body could not be interpreted."""

    code = "malformed"


TRANSIENT_ERRORS = (NetworkError, RateLimitedError)


def parse_retry_after(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default


class CatalogClient(abc.ABC):
    """Shared contract for external release catalogs."""

    provider: Provider

    def __init__(self, rate_limiter: RateLimiter, timeout: float = 30.0) -> None:
        self.rate_limiter = rate_limiter
        self.timeout = timeout

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Return whether the client holds the credentials it needs."""

    @abc.abstractmethod
    def build_query(self, track: Track) -> SearchQuery:
        """Build the search query for a track; an empty query means nothing to look up."""

    @abc.abstractmethod
    async def search(self, query: SearchQuery) -> List[Candidate]:
        """Return at most five candidates, best first."""

    @abc.abstractmethod
    def set_token(self, token: Optional[str]) -> None:
        """Replace the API token used for subsequent requests."""

    @property
    def missing_credentials_message(self) -> str:
        return f"{self.provider.display_name} credentials are required"

    async def _get(self, url: str, *, params, headers) -> httpx.Response:
        await self.rate_limiter.acquire()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{self.provider.display_name} request timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{self.provider.display_name} request failed: {exc}") from exc

    def _json(self, response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"{self.provider.display_name} returned an unreadable body"
            ) from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{self.provider.display_name} returned an unexpected body")
        return payload
