from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

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

SEARCH_URL = "https://musicbrainz.org/ws/2/release/"
RELEASE_URL = "https://musicbrainz.org/release/{release_id}"
DEFAULT_RETRY_AFTER = 5.0


def lucene_term(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed.replace("\\", "\\\\").replace('"', '\\"')


def _score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _year(date: Any) -> Optional[int]:
    if isinstance(date, str) and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


class MusicBrainzClient(CatalogClient):
    provider = Provider.MUSICBRAINZ

    def __init__(
        self,
        app_name: str,
        app_version: str,
        contact: str,
        token: str | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(rate_limiter or RateLimiter.for_musicbrainz(), timeout=timeout)
        self.app_name = app_name
        self.app_version = app_version
        self.contact = contact
        self.token = token

    @property
    def user_agent(self) -> str:
        return f"{self.app_name}/{self.app_version} ( {self.contact} )"

    def is_configured(self) -> bool:
        # Anonymous searches are allowed as long as we identify ourselves.
        return bool(self.app_name and self.contact)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token or None

    @property
    def missing_credentials_message(self) -> str:
        return "MusicBrainz rejected the request; check MUSICBRAINZ_TOKEN and the application contact"

    def build_query(self, track: Track) -> SearchQuery:
        components = []
        artist = lucene_term(track.artist)
        title = lucene_term(track.title)
        album = lucene_term(track.album)
        if artist:
            components.append(f'artist:"{artist}"')
        if title:
            components.append(f'recording:"{title}"')
        if album:
            components.append(f'release:"{album}"')
        return SearchQuery(
            text=" AND ".join(components),
            artist=(track.artist or "").strip() or None,
            title=(track.title or "").strip() or None,
            album=(track.album or "").strip() or None,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def search(self, query: SearchQuery) -> List[Candidate]:
        params = {"fmt": "json", "limit": str(MAX_CANDIDATES), "query": query.text}
        response = await self._get(SEARCH_URL, params=params, headers=self._headers())
        status = response.status_code
        if status in (429, 503):
            retry_after = parse_retry_after(response.headers.get("Retry-After"), default=DEFAULT_RETRY_AFTER)
            raise RateLimitedError("rate limited by MusicBrainz", retry_after=retry_after)
        if status in (401, 403):
            raise UnauthorizedError("unauthorized MusicBrainz request")
        if status == 404:
            return []
        if status >= 500:
            raise NetworkError(f"MusicBrainz returned status {status}")
        if status != 200:
            raise CatalogError(f"unexpected MusicBrainz status: {status}")

        payload = self._json(response)
        releases = payload.get("releases") or []
        if not isinstance(releases, list):
            raise MalformedResponseError("MusicBrainz releases are not a list")
        return self._candidates(releases)

    def _candidates(self, releases: List[Mapping[str, Any]]) -> List[Candidate]:
        candidates: List[Candidate] = []
        for release in releases:
            if not isinstance(release, Mapping) or not release.get("id"):
                continue
            release_id = str(release["id"])
            candidates.append(
                Candidate(
                    match_id="",
                    provider=self.provider,
                    release_id=release_id,
                    score=_score(release.get("score")),
                    title=release.get("title"),
                    year=_year(release.get("date")),
                    country=release.get("country"),
                    thumb=None,
                    resource_url=RELEASE_URL.format(release_id=release_id),
                    raw_payload=dict(release),
                )
            )
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)
        return candidates[:MAX_CANDIDATES]
