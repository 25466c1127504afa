import asyncio

import pytest
from fastapi.testclient import TestClient

from library_sync.app import create_app
from library_sync.catalogs.base import RateLimitedError, UnauthorizedError
from library_sync.models import Provider

TRACK_ID = "soundcloud:tracks:1"


@pytest.fixture()
def client(config, clients):
    # Background lookups park on the gate so request results stay deterministic.
    for fake in clients.values():
        fake.gate = asyncio.Event()
    app = create_app(config, clients)
    with TestClient(app) as test_client:
        yield test_client


def ingest(client, *records, **payload):
    body = {"records": list(records)}
    body.update(payload)
    response = client.post("/api/activity", json=body)
    assert response.status_code == 200
    return response.json()


def test_health_endpoint(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["port"] == 9000
    assert payload["disabledProviders"] == []


def test_activity_ingest_schedules_lookups(client, record):
    result = ingest(client, record(1), record(2, title="Song B"))
    assert result["updatedTracks"] == ["soundcloud:tracks:1", "soundcloud:tracks:2"]
    assert len(result["jobs"]) == 4

    again = ingest(client, record(1))
    assert again["updatedTracks"] == []
    assert again["jobs"] == []

    jobs = client.get("/api/jobs").json()
    assert {job["provider"] for job in jobs} == {"discogs", "musicbrainz"}


def test_activity_single_record_and_playlist(client, record):
    response = client.post(
        "/api/activity",
        json={
            "record": {
                "kind": "playlist",
                "id": 77,
                "title": "Digging",
                "tracks": [record(5, title="Deep Cut")],
            }
        },
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["updatedPlaylist"] == "soundcloud:playlists:77"
    assert payload["updatedTracks"] == ["soundcloud:tracks:5"]


def test_activity_validation(client):
    assert client.post("/api/activity", json={"records": "nope"}).status_code == 400
    assert client.post("/api/activity", json={"record": [1], "context": {}}).status_code == 400
    assert client.post("/api/activity", json={"record": {}, "context": "bad"}).status_code == 400


def test_library_status_filters_and_paging(client, record):
    ingest(client, record(1, liked=True), record(2, title="Song B"))

    rows = client.get("/api/library/status").json()
    assert rows["total"] == 2
    assert {row["discogsStatus"] for row in rows["rows"]} == {"running"}

    liked = client.get("/api/library/status", params={"likedOnly": "true"}).json()
    assert [row["trackId"] for row in liked["rows"]] == [TRACK_ID]

    page = client.get("/api/library/status", params={"limit": 1, "offset": 1}).json()
    assert page["limit"] == 1
    assert page["offset"] == 1
    assert len(page["rows"]) == 1

    missing = client.get("/api/library/missing-assets").json()
    assert sorted(missing["trackIds"]) == [TRACK_ID, "soundcloud:tracks:2"]


def test_track_detail_and_not_found(client, record):
    ingest(client, record(1))
    detail = client.get(f"/api/tracks/{TRACK_ID}").json()
    assert detail["title"] == "Song A"
    assert detail["row"]["trackId"] == TRACK_ID
    assert set(detail["enrichment"]) == {"discogs", "musicbrainz"}

    assert client.get("/api/tracks/soundcloud:tracks:404").status_code == 404


def test_local_asset_and_external_library(client, record):
    ingest(client, record(1))

    response = client.post(
        f"/api/tracks/{TRACK_ID}/local-asset",
        json={"location": "/music/song-a.flac", "durationMs": 180000},
    )
    assert response.json() == {"ok": True, "changed": True}
    assert client.get("/api/library/missing-assets").json()["trackIds"] == []

    response = client.post(f"/api/tracks/{TRACK_ID}/external-libraries", json={"library": "Rekordbox"})
    assert response.json() == {"ok": True, "changed": True}
    rows = client.get("/api/library/status", params={"rekordboxOnly": "true"}).json()["rows"]
    assert [row["trackId"] for row in rows] == [TRACK_ID]

    assert client.post(f"/api/tracks/{TRACK_ID}/local-asset", json={}).status_code == 400
    bad = client.post(f"/api/tracks/{TRACK_ID}/external-libraries", json={"library": "x", "present": "yes"})
    assert bad.status_code == 400


def test_candidates_endpoint_maps_catalog_errors(client, clients, record, candidate):
    ingest(client, record(1))
    discogs = clients[Provider.DISCOGS]
    discogs.gate = None
    discogs.responses = [UnauthorizedError("bad token"), RateLimitedError("slow down", retry_after=3)]

    assert client.get(f"/api/discogs/candidates/{TRACK_ID}").status_code == 401
    assert client.get(f"/api/discogs/candidates/{TRACK_ID}").status_code == 503

    musicbrainz = clients[Provider.MUSICBRAINZ]
    musicbrainz.gate = None
    musicbrainz.responses = [[candidate(Provider.MUSICBRAINZ, "mb-1", 72.5)]]
    payload = client.get(f"/api/musicbrainz/candidates/{TRACK_ID}").json()
    assert [item["releaseId"] for item in payload] == ["mb-1"]
    assert payload[0]["provider"] == "musicbrainz"

    assert client.get(f"/api/spotify/candidates/{TRACK_ID}").status_code == 404


def test_confirm_ignore_retry(client, record):
    ingest(client, record(1))

    confirmed = client.post(
        "/api/discogs/confirm",
        json={"trackId": TRACK_ID, "releaseId": "12345", "score": 91, "rawPayload": {"id": 12345}},
    ).json()
    assert confirmed["state"] == "success"
    assert confirmed["release_id"] == "12345"
    assert confirmed["confidence"] == 91.0
    assert confirmed["confirmed"] is True

    ignored = client.post("/api/musicbrainz/ignore", json={"trackId": TRACK_ID}).json()
    assert ignored["state"] == "ignored"

    job = client.post("/api/musicbrainz/retry", json={"trackId": TRACK_ID}).json()
    assert job["provider"] == "musicbrainz"
    assert job["trackId"] == TRACK_ID
    row = client.get(f"/api/tracks/{TRACK_ID}").json()["row"]
    assert row["musicbrainzStatus"] == "running"
    assert row["discogsStatus"] == "success"


def test_command_validation(client, record):
    ingest(client, record(1))
    assert client.post("/api/discogs/confirm", json={"trackId": TRACK_ID}).status_code == 400
    assert (
        client.post(
            "/api/discogs/confirm", json={"trackId": TRACK_ID, "releaseId": "1", "score": "high"}
        ).status_code
        == 400
    )
    assert client.post("/api/discogs/retry", json={}).status_code == 400
    assert client.post("/api/discogs/confirm", json={"trackId": "soundcloud:tracks:9", "releaseId": "1"}).status_code == 404
    assert client.post("/api/unknown/ignore", json={"trackId": TRACK_ID}).status_code == 404


def test_global_ignore(client, record):
    ingest(client, record(1))
    payload = client.post("/api/library/ignore", json={"trackId": TRACK_ID}).json()
    assert payload["discogs"]["state"] == "ignored"
    assert payload["musicbrainz"]["state"] == "ignored"


def test_backfill_and_credentials(client):
    job = client.post("/api/discogs/backfill").json()
    assert job["label"] == "Discogs backfill"
    assert job["provider"] == "discogs"

    assert client.post("/api/discogs/backfill", json={"states": ["bogus"]}).status_code == 400
    assert client.post("/api/discogs/backfill", json={"states": "error"}).status_code == 400

    response = client.post("/api/discogs/credentials", json={"token": "new-token"})
    assert response.json() == {"ok": True, "requeued": 0}
    assert client.post("/api/discogs/credentials", json={"token": 5}).status_code == 400


def test_likes_refresh_and_event_polling(client, record):
    ingest(client, record(1, liked=True))

    refresh = client.post("/api/likes/refresh").json()
    assert refresh["event"] == "app://library/likes/refresh"
    assert refresh["payload"]["known"] == 1

    events = client.get("/api/events").json()
    names = [event["event"] for event in events["events"]]
    assert "app://library/track-updated" in names
    assert "app://jobs/progress" in names
    assert events["lastSeq"] >= refresh["seq"]

    later = client.get("/api/events", params={"since": refresh["seq"]}).json()
    assert all(event["seq"] > refresh["seq"] for event in later["events"])
    assert "app://library/likes/refresh" not in [event["event"] for event in later["events"]]


def test_rekordbox_import_endpoint(client, record, tmp_path):
    ingest(client, record(1, title="Night Drive", artist="Synth Kid"))
    audio = tmp_path / "night-drive.flac"
    audio.write_bytes(b"audio")
    export = tmp_path / "rekordbox.xml"
    export.write_text(
        '<DJ_PLAYLISTS><COLLECTION><TRACK TrackID="7" Name="Night Drive" Artist="Synth Kid" '
        f'Location="{audio.as_uri()}"/></COLLECTION></DJ_PLAYLISTS>',
        encoding="utf-8",
    )

    payload = client.post("/api/library/rekordbox/import", json={"path": str(export)}).json()
    assert payload["matched"] == {"7": [TRACK_ID]}
    assert payload["updatedTracks"] == [TRACK_ID]

    detail = client.get(f"/api/tracks/{TRACK_ID}").json()
    assert detail["external_libraries"] == ["rekordbox"]
    assert detail["local_asset"]["location"] == str(audio)
    assert detail["row"]["inExternalLibrary"] is True

    assert client.post("/api/library/rekordbox/import", json={}).status_code == 400
    missing = client.post("/api/library/rekordbox/import", json={"path": str(tmp_path / "nope.xml")})
    assert missing.status_code == 400
