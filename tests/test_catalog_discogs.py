from typing import Any, Dict, List, Optional

import httpx
import pytest

from library_sync.catalogs.base import (
    CatalogError,
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
)
from library_sync.catalogs.discogs import SEARCH_URL, DiscogsClient
from library_sync.models import Track
from library_sync.rate_limit import RateLimiter


class DummyResponse:
    def __init__(self, data: Any = None, status_code: int = 200, headers: Optional[Dict[str, str]] = None):
        self._data = data
        self.status_code = status_code
        self.headers = headers or {}

    def json(self) -> Any:
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


class DummyAsyncClient:
    def __init__(self, responses: List[Any]):
        self._responses = responses
        self.calls: List[Dict[str, Any]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get(self, url: str, params=None, headers=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        outcome = self._responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_client(token: Optional[str] = "secret") -> DiscogsClient:
    return DiscogsClient(token=token, user_agent="LibrarySyncTests/1.0", rate_limiter=RateLimiter(100, 1.0))


def patch_http(monkeypatch, responses: List[Any]) -> DummyAsyncClient:
    dummy = DummyAsyncClient(responses)
    monkeypatch.setattr("library_sync.catalogs.base.httpx.AsyncClient", lambda timeout=None: dummy)
    return dummy


TRACK = Track(id="soundcloud:tracks:1", soundcloud_id=1, title="Windowlicker", artist="Aphex Twin")


@pytest.mark.asyncio
async def test_discogs_search_filters_and_scores(monkeypatch):
    dummy = patch_http(
        monkeypatch,
        [
            DummyResponse(
                {
                    "results": [
                        {
                            "id": 1,
                            "type": "release",
                            "title": "Aphex Twin - Windowlicker",
                            "resource_url": "https://api.discogs.com/releases/1",
                            "year": "1999",
                            "country": "UK",
                            "thumb": "https://img/1.jpg",
                        },
                        {"id": 2, "type": "master", "title": "Aphex Twin - Windowlicker", "resource_url": "x"},
                        {"id": 3, "type": "release", "title": "No URL"},
                        {
                            "id": 4,
                            "type": "release",
                            "title": "Aphex Twin - Something Else",
                            "resource_url": "https://api.discogs.com/releases/4",
                            "score": 12,
                        },
                    ]
                }
            )
        ],
    )
    client = make_client()
    query = client.build_query(TRACK)
    assert query.text == "Aphex Twin Windowlicker"

    candidates = await client.search(query)

    assert [candidate.release_id for candidate in candidates] == ["1", "4"]
    assert candidates[0].score == 100.0
    assert candidates[0].year == 1999
    assert candidates[0].country == "UK"
    assert candidates[0].resource_url == "https://api.discogs.com/releases/1"

    call = dummy.calls[0]
    assert call["url"] == SEARCH_URL
    assert call["params"] == {
        "type": "release",
        "per_page": "5",
        "artist": "Aphex Twin",
        "release_title": "Windowlicker",
        "q": "Aphex Twin Windowlicker",
    }
    assert call["headers"]["Authorization"] == "Discogs token=secret"
    assert call["headers"]["User-Agent"] == "LibrarySyncTests/1.0"


@pytest.mark.asyncio
async def test_discogs_requires_token(monkeypatch):
    dummy = patch_http(monkeypatch, [])
    client = make_client(token=None)
    assert client.is_configured() is False
    with pytest.raises(UnauthorizedError):
        await client.search(client.build_query(TRACK))
    assert dummy.calls == []

    client.set_token("new")
    assert client.is_configured() is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (DummyResponse({}, status_code=401), UnauthorizedError),
        (DummyResponse({}, status_code=429, headers={"Retry-After": "7"}), RateLimitedError),
        (DummyResponse({}, status_code=502), NetworkError),
        (DummyResponse({}, status_code=418), CatalogError),
        (DummyResponse(ValueError("not json")), MalformedResponseError),
        (httpx.ConnectError("refused"), NetworkError),
    ],
)
async def test_discogs_error_mapping(monkeypatch, response, error):
    patch_http(monkeypatch, [response])
    client = make_client()
    with pytest.raises(error) as excinfo:
        await client.search(client.build_query(TRACK))
    if error is RateLimitedError:
        assert excinfo.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_discogs_not_found_means_no_candidates(monkeypatch):
    patch_http(monkeypatch, [DummyResponse({}, status_code=404)])
    client = make_client()
    assert await client.search(client.build_query(TRACK)) == []


def test_discogs_query_uses_album_when_known():
    client = make_client()
    track = Track(id="soundcloud:tracks:2", soundcloud_id=2, title="Flim", artist="Aphex Twin", album="Come to Daddy")
    query = client.build_query(track)
    assert query.text == "Aphex Twin Flim Come to Daddy"
    assert client._params(query)["release_title"] == "Come to Daddy"

    empty = client.build_query(Track(id="soundcloud:tracks:3", soundcloud_id=3))
    assert empty.empty


@pytest.mark.asyncio
async def test_discogs_tolerates_bad_score_and_title_fields(monkeypatch):
    patch_http(
        monkeypatch,
        [
            DummyResponse(
                {
                    "results": [
                        {
                            "id": 5,
                            "type": "release",
                            "title": "Aphex Twin - Windowlicker",
                            "resource_url": "https://api.discogs.com/releases/5",
                            "score": "n/a",
                        },
                        {
                            "id": 6,
                            "type": "release",
                            "title": ["not", "text"],
                            "resource_url": "https://api.discogs.com/releases/6",
                            "score": {"value": 1},
                        },
                    ]
                }
            )
        ],
    )
    client = make_client()
    candidates = await client.search(client.build_query(TRACK))

    assert [candidate.release_id for candidate in candidates] == ["5", "6"]
    assert candidates[0].score == 100.0
    assert candidates[1].title is None
    assert candidates[1].score == 0.0


@pytest.mark.asyncio
async def test_discogs_non_list_results_are_malformed(monkeypatch):
    patch_http(monkeypatch, [DummyResponse({"results": 7}), DummyResponse([1, 2])])
    client = make_client()
    with pytest.raises(MalformedResponseError):
        await client.search(client.build_query(TRACK))
    with pytest.raises(MalformedResponseError):
        await client.search(client.build_query(TRACK))
