import pytest

from library_sync.events import PLAYLIST_UPDATED_EVENT, TRACK_UPDATED_EVENT, EventNotifier
from library_sync.library import LibraryStore, TrackNotFoundError
from library_sync.models import (
    EnrichmentStatus,
    LibraryFilter,
    LocalAsset,
    MatchState,
    Playlist,
    Provider,
    Track,
)
from library_sync.storage import JSONStorage


def make_track(number: int, **fields) -> Track:
    return Track(id=f"soundcloud:tracks:{number}", soundcloud_id=number, title=f"Song {number}", **fields)


@pytest.fixture()
def notifier():
    return EventNotifier()


@pytest.fixture()
def store(tmp_path, notifier):
    return LibraryStore(JSONStorage(tmp_path / "library.json"), notifier)


def track_events(notifier):
    return [event for event in notifier.since(0) if event.name == TRACK_UPDATED_EVENT]


@pytest.mark.asyncio
async def test_upsert_is_idempotent(store, notifier):
    assert await store.upsert_track(make_track(1, artist="A")) is True
    assert await store.upsert_track(make_track(1, artist="A")) is False
    assert len(track_events(notifier)) == 1

    assert await store.upsert_track(make_track(1, artist="B")) is True
    assert len(track_events(notifier)) == 2
    assert store.get_track("soundcloud:tracks:1").artist == "B"


@pytest.mark.asyncio
async def test_state_survives_reload(tmp_path, store):
    await store.upsert_track(make_track(1, playlists={"soundcloud:playlists:9": 0}))
    await store.upsert_playlist(Playlist(id="soundcloud:playlists:9", soundcloud_id=9, title="Mix"))
    await store.set_enrichment_status(
        "soundcloud:tracks:1",
        Provider.DISCOGS,
        EnrichmentStatus(state=MatchState.SUCCESS, release_id="55", confidence=90.0),
    )

    reloaded = LibraryStore(JSONStorage(tmp_path / "library.json"))
    await reloaded.load()

    assert reloaded.get_track("soundcloud:tracks:1").title == "Song 1"
    assert reloaded.get_playlist("soundcloud:playlists:9").title == "Mix"
    assert reloaded.playlist_members("soundcloud:playlists:9") == ["soundcloud:tracks:1"]
    status = reloaded.get_enrichment_status("soundcloud:tracks:1", Provider.DISCOGS)
    assert status.release_id == "55"
    assert reloaded.get_enrichment_status("soundcloud:tracks:1", Provider.MUSICBRAINZ).state is MatchState.UNCHECKED


@pytest.mark.asyncio
async def test_status_write_for_unknown_track_fails(store):
    with pytest.raises(TrackNotFoundError):
        await store.set_enrichment_status("soundcloud:tracks:404", Provider.DISCOGS, EnrichmentStatus())


@pytest.mark.asyncio
async def test_noop_status_write_publishes_nothing(store, notifier):
    await store.upsert_track(make_track(1))
    status = EnrichmentStatus(state=MatchState.ERROR, message="no candidates found")
    assert await store.set_enrichment_status("soundcloud:tracks:1", Provider.DISCOGS, status) is True
    count = len(track_events(notifier))
    assert await store.set_enrichment_status("soundcloud:tracks:1", Provider.DISCOGS, status) is False
    assert len(track_events(notifier)) == count


@pytest.mark.asyncio
async def test_list_status_filters_and_orders(store):
    await store.upsert_track(make_track(1, liked=True))
    await store.upsert_track(make_track(2))
    await store.upsert_track(make_track(3, liked=True))
    await store.set_enrichment_status(
        "soundcloud:tracks:3", Provider.DISCOGS, EnrichmentStatus(state=MatchState.SUCCESS, release_id="9")
    )

    page = store.list_status()
    assert page.total == 3
    assert page.limit == 100

    liked = store.list_status(LibraryFilter(liked_only=True))
    assert {row.track_id for row in liked.rows} == {"soundcloud:tracks:1", "soundcloud:tracks:3"}

    unresolved = store.list_status(LibraryFilter(liked_only=True, unresolved_discogs_only=True))
    assert [row.track_id for row in unresolved.rows] == ["soundcloud:tracks:1"]

    paged = store.list_status(limit=1, offset=1)
    assert paged.total == 3
    assert len(paged.rows) == 1

    assert store.list_status(limit=10_000).limit == 500
    assert store.list_status(limit=0).limit == 1


@pytest.mark.asyncio
async def test_paging_walks_filtered_rows_without_overlap(store):
    for number in range(1, 12):
        await store.upsert_track(make_track(number, liked=number % 3 != 0))
    expected = {row.track_id for row in store.list_status(LibraryFilter(liked_only=True), limit=500).rows}
    assert len(expected) == 8

    seen = []
    offset = 0
    while True:
        page = store.list_status(LibraryFilter(liked_only=True), limit=3, offset=offset)
        assert page.total == 8
        if not page.rows:
            break
        seen.extend(row.track_id for row in page.rows)
        offset += len(page.rows)

    assert len(seen) == len(set(seen))
    assert set(seen) == expected
    assert store.list_status(LibraryFilter(liked_only=True), limit=3, offset=99).rows == []

@pytest.mark.asyncio
async def test_rows_ordered_by_track_id_when_timestamps_tie(store):
    for number in (3, 1, 2):
        await store.upsert_track(make_track(number))
    for number in (1, 2, 3):
        store._tracks[f"soundcloud:tracks:{number}"].updated_at = "2024-01-01T00:00:00.000+00:00"
    assert [row.track_id for row in store.list_status().rows] == [
        "soundcloud:tracks:1",
        "soundcloud:tracks:2",
        "soundcloud:tracks:3",
    ]

    store._tracks["soundcloud:tracks:3"].updated_at = "2024-02-01T00:00:00.000+00:00"
    assert store.list_status().rows[0].track_id == "soundcloud:tracks:3"


@pytest.mark.asyncio
async def test_conflict_flag_and_filter(store):
    await store.upsert_track(make_track(1))
    await store.upsert_track(make_track(2))
    for number, mb_release in ((1, "mb-1"), (2, "d-2")):
        track_id = f"soundcloud:tracks:{number}"
        await store.set_enrichment_status(
            track_id, Provider.DISCOGS, EnrichmentStatus(state=MatchState.SUCCESS, release_id=f"d-{number}")
        )
        await store.set_enrichment_status(
            track_id, Provider.MUSICBRAINZ, EnrichmentStatus(state=MatchState.SUCCESS, release_id=mb_release)
        )

    assert store.row_for("soundcloud:tracks:1").conflict is True
    assert store.row_for("soundcloud:tracks:2").conflict is False
    conflicts = store.list_status(LibraryFilter(conflicts_only=True))
    assert [row.track_id for row in conflicts.rows] == ["soundcloud:tracks:1"]
    assert conflicts.rows[0].to_dict()["conflict"] is True


@pytest.mark.asyncio
async def test_local_assets_and_external_libraries(store):
    await store.upsert_track(make_track(1))
    await store.upsert_track(make_track(2))

    assert store.list_missing_assets() == ["soundcloud:tracks:1", "soundcloud:tracks:2"]
    assert await store.record_local_asset("soundcloud:tracks:1", LocalAsset(location="/music/1.mp3")) is True
    assert await store.record_local_asset("soundcloud:tracks:1", LocalAsset(location="/music/1.mp3")) is False
    assert store.list_missing_assets() == ["soundcloud:tracks:2"]

    missing = store.list_status(LibraryFilter(missing_assets_only=True))
    assert [row.track_id for row in missing.rows] == ["soundcloud:tracks:2"]

    assert await store.set_external_membership("soundcloud:tracks:2", "Rekordbox", True) is True
    assert await store.set_external_membership("soundcloud:tracks:2", "rekordbox", True) is False
    external = store.list_status(LibraryFilter(external_only=True))
    assert [row.track_id for row in external.rows] == ["soundcloud:tracks:2"]

    # Asset and membership survive a metadata re-observation.
    await store.upsert_track(make_track(2, artist="New"))
    assert store.get_track("soundcloud:tracks:2").external_libraries == ["rekordbox"]

    with pytest.raises(TrackNotFoundError):
        await store.record_local_asset("soundcloud:tracks:404", LocalAsset(location="/x"))


@pytest.mark.asyncio
async def test_playlist_upsert_publishes_once(store, notifier):
    playlist = Playlist(id="soundcloud:playlists:1", soundcloud_id=1, title="Mix")
    assert await store.upsert_playlist(playlist) is True
    assert await store.upsert_playlist(playlist) is False
    assert len([event for event in notifier.since(0) if event.name == PLAYLIST_UPDATED_EVENT]) == 1


@pytest.mark.asyncio
async def test_returned_entities_are_copies(store):
    await store.upsert_track(make_track(1))
    track = store.get_track("soundcloud:tracks:1")
    track.title = "Mutated"
    assert store.get_track("soundcloud:tracks:1").title == "Song 1"


@pytest.mark.asyncio
async def test_failed_save_keeps_previous_state(store, notifier, monkeypatch):
    await store.upsert_track(make_track(1, artist="A"))
    published = len(track_events(notifier))

    async def broken_save(values):
        raise OSError("disk full")

    monkeypatch.setattr(store.storage, "set_many", broken_save)

    with pytest.raises(OSError):
        await store.upsert_track(make_track(1, artist="B"))
    with pytest.raises(OSError):
        await store.upsert_track(make_track(2))
    with pytest.raises(OSError):
        await store.record_local_asset("soundcloud:tracks:1", LocalAsset(location="/music/1.flac"))
    with pytest.raises(OSError):
        await store.set_enrichment_status(
            "soundcloud:tracks:1", Provider.DISCOGS, EnrichmentStatus(state=MatchState.SUCCESS, release_id="7")
        )

    track = store.get_track("soundcloud:tracks:1")
    assert track.artist == "A"
    assert track.local_asset is None
    assert store.has_track("soundcloud:tracks:2") is False
    assert store.get_enrichment_status("soundcloud:tracks:1", Provider.DISCOGS).state is MatchState.UNCHECKED
    assert len(track_events(notifier)) == published

    monkeypatch.undo()
    assert await store.upsert_track(make_track(1, artist="B")) is True
    assert store.get_track("soundcloud:tracks:1").artist == "B"


@pytest.mark.asyncio
async def test_list_tracks_returns_sorted_copies(store):
    await store.upsert_track(make_track(2))
    await store.upsert_track(make_track(1))
    tracks = store.list_tracks()
    assert [track.id for track in tracks] == ["soundcloud:tracks:1", "soundcloud:tracks:2"]
    tracks[0].title = "changed"
    assert store.get_track("soundcloud:tracks:1").title == "Song 1"
