from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from rapidfuzz import fuzz, utils

from library_sync.catalogs.base import (
    MAX_CANDIDATES,
    CatalogClient,
    CatalogError,
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
    parse_retry_after,
)
from library_sync.models import Candidate, Provider, SearchQuery, Track
from library_sync.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

SEARCH_URL = "https://api.discogs.com/database/search"
DEFAULT_USER_AGENT = "SoundCloudLibrarySync/0.1"


def _as_year(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _as_score(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class DiscogsClient(CatalogClient):
    provider = Provider.DISCOGS

    def __init__(
        self,
        token: str | None,
        user_agent: str | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(rate_limiter or RateLimiter.for_discogs(), timeout=timeout)
        self.token = token
        self.user_agent = user_agent or DEFAULT_USER_AGENT

    def is_configured(self) -> bool:
        return bool(self.token)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token or None

    @property
    def missing_credentials_message(self) -> str:
        return "Discogs token is required; set DISCOGS_TOKEN or update credentials"

    def build_query(self, track: Track) -> SearchQuery:
        artist = (track.artist or "").strip() or None
        title = (track.title or "").strip() or None
        album = (track.album or "").strip() or None
        terms = [term for term in (artist, title, album) if term]
        return SearchQuery(text=" ".join(terms), artist=artist, title=title, album=album)

    def _params(self, query: SearchQuery) -> Dict[str, str]:
        params = {"type": "release", "per_page": str(MAX_CANDIDATES)}
        if query.artist:
            params["artist"] = query.artist
        release_title = query.album or query.title
        if release_title:
            params["release_title"] = release_title
        if query.text:
            params["q"] = query.text
        return params

    async def search(self, query: SearchQuery) -> List[Candidate]:
        if not self.is_configured():
            raise UnauthorizedError(self.missing_credentials_message)
        headers = {
            "Authorization": f"Discogs token={self.token}",
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }
        response = await self._get(SEARCH_URL, params=self._params(query), headers=headers)
        status = response.status_code
        if status in (401, 403):
            raise UnauthorizedError("Discogs rejected the configured token")
        if status == 404:
            return []
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"), default=5.0)
            raise RateLimitedError("rate limited by Discogs", retry_after=retry_after)
        if status >= 500:
            raise NetworkError(f"Discogs returned status {status}")
        if status != 200:
            raise CatalogError(f"Discogs search returned status {status}")

        payload = self._json(response)
        results = payload.get("results") or []
        if not isinstance(results, list):
            raise MalformedResponseError("Discogs results are not a list")
        return self._candidates(query, results)

    def _candidates(self, query: SearchQuery, results: List[Mapping[str, Any]]) -> List[Candidate]:
        candidates: List[Candidate] = []
        for result in results:
            if not isinstance(result, Mapping):
                continue
            if result.get("type") != "release" or not result.get("resource_url"):
                continue
            if result.get("id") is None:
                continue
            title = result.get("title") if isinstance(result.get("title"), str) else None
            score = _as_score(result.get("score"))
            if score is None:
                score = fuzz.token_set_ratio(query.text, title or "", processor=utils.default_process)
            candidates.append(
                Candidate(
                    match_id="",
                    provider=self.provider,
                    release_id=str(result["id"]),
                    score=round(score, 2),
                    title=title,
                    year=_as_year(result.get("year")),
                    country=result.get("country"),
                    thumb=result.get("thumb") or None,
                    resource_url=result.get("resource_url"),
                    raw_payload=dict(result),
                )
            )
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)
        logger.debug("Discogs returned %d usable results for %r", len(candidates), query.text)
        return candidates[:MAX_CANDIDATES]
