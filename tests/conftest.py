import asyncio
import copy
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from library_sync.app import build_service
from library_sync.catalogs.base import CatalogClient
from library_sync.config import AppConfig
from library_sync.models import Candidate, Provider, SearchQuery, Track
from library_sync.rate_limit import RateLimiter


class FakeCatalogClient(CatalogClient):
    """Scripted catalog: each search pops the next outcome from ``responses``."""

    def __init__(self, provider: Provider, configured: bool = True) -> None:
        super().__init__(rate_limiter=RateLimiter(capacity=1000, period=1.0, name=f"fake-{provider.value}"))
        self.provider = provider
        self._configured = configured
        self.responses: List[Union[List[Candidate], Exception]] = []
        self.queries: List[SearchQuery] = []
        self.gate: Optional[asyncio.Event] = None
        self.token: Optional[str] = "token"

    def is_configured(self) -> bool:
        return self._configured

    def set_token(self, token):
        self.token = token
        self._configured = bool(token)

    def build_query(self, track: Track) -> SearchQuery:
        terms = [term for term in (track.artist, track.title) if term]
        return SearchQuery(text=" ".join(terms), artist=track.artist, title=track.title, album=track.album)

    async def search(self, query: SearchQuery) -> List[Candidate]:
        self.queries.append(query)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.responses.pop(0) if self.responses else []
        if isinstance(outcome, Exception):
            raise outcome
        return copy.deepcopy(outcome)


def make_candidate(provider: Provider, release_id: str, score: float, title: str = "Release") -> Candidate:
    return Candidate(
        match_id="",
        provider=provider,
        release_id=release_id,
        score=score,
        title=title,
        raw_payload={"id": release_id, "score": score},
    )


def track_record(soundcloud_id: int = 1, title: str = "Song A", artist: str = "Artist X", **extra) -> Dict:
    record = {"kind": "track", "id": soundcloud_id, "title": title, "user": {"username": artist}}
    record.update(extra)
    return record


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "data"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


@pytest.fixture()
def config(data_dir: Path) -> AppConfig:
    return AppConfig(
        data_dir=data_dir,
        host="127.0.0.1",
        port=9000,
        workers_per_provider=1,
        lookup_timeout_seconds=5.0,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        job_retention_seconds=60.0,
    )


@pytest.fixture()
def clients() -> Dict[Provider, FakeCatalogClient]:
    return {
        Provider.DISCOGS: FakeCatalogClient(Provider.DISCOGS),
        Provider.MUSICBRAINZ: FakeCatalogClient(Provider.MUSICBRAINZ),
    }


@pytest.fixture()
def service(config, clients):
    return build_service(config, clients)


@pytest.fixture()
def candidate():
    return make_candidate


@pytest.fixture()
def record():
    return track_record
