from __future__ import annotations

import asyncio
import copy
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from library_sync.conflicts import conflict_for
from library_sync.events import PLAYLIST_UPDATED_EVENT, TRACK_UPDATED_EVENT, EventNotifier
from library_sync.models import (
    EnrichmentStatus,
    LibraryFilter,
    LibraryStatusPage,
    LibraryStatusRow,
    LocalAsset,
    MatchState,
    Playlist,
    Provider,
    Track,
    utcnow_iso,
)
from library_sync.storage import JSONStorage

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 500


class TrackNotFoundError(LookupError):
    """Raised when a command references a track id the library does not know."""

    def __init__(self, track_id: str) -> None:
        super().__init__(f"track '{track_id}' not found in library")
        self.track_id = track_id


class LibraryStore:
    """Source of truth for tracks, playlists and per-provider match status.

    State lives in memory and is written through to a JSON document after
    every mutation. All mutations go through a single lock; reads never
    suspend, so they always observe a consistent snapshot.
    """

    def __init__(self, storage: JSONStorage, notifier: Optional[EventNotifier] = None) -> None:
        self.storage = storage
        self.notifier = notifier
        self._lock = asyncio.Lock()
        self._tracks: Dict[str, Track] = {}
        self._playlists: Dict[str, Playlist] = {}
        self._enrichment: Dict[str, Dict[Provider, EnrichmentStatus]] = {}
        self._members: Dict[str, Dict[str, int]] = {}

    async def load(self) -> None:
        async with self._lock:
            tracks = await self.storage.get("tracks", default={})
            playlists = await self.storage.get("playlists", default={})
            enrichment = await self.storage.get("enrichment", default={})
            self._tracks = {track_id: Track.from_dict(item) for track_id, item in tracks.items()}
            self._playlists = {
                playlist_id: Playlist.from_dict(item) for playlist_id, item in playlists.items()
            }
            self._enrichment = {}
            for track_id, by_provider in enrichment.items():
                self._enrichment[track_id] = {}
                for provider, status in by_provider.items():
                    try:
                        self._enrichment[track_id][Provider(provider)] = EnrichmentStatus.from_dict(status)
                    except ValueError:
                        logger.warning("Skipping enrichment status for unknown provider %s", provider)
            self._members = {}
            for track in self._tracks.values():
                self._index_memberships(track)
        logger.info("Loaded library: %d tracks, %d playlists", len(self._tracks), len(self._playlists))

    async def _persist(self) -> None:
        await self.storage.set_many(
            {
                "tracks": {track_id: track.to_dict() for track_id, track in self._tracks.items()},
                "playlists": {
                    playlist_id: playlist.to_dict() for playlist_id, playlist in self._playlists.items()
                },
                "enrichment": {
                    track_id: {provider.value: status.to_dict() for provider, status in by_provider.items()}
                    for track_id, by_provider in self._enrichment.items()
                },
            }
        )

    def _index_memberships(self, track: Track) -> None:
        for members in self._members.values():
            members.pop(track.id, None)
        for playlist_id, position in track.playlists.items():
            self._members.setdefault(playlist_id, {})[track.id] = position

    def _publish_track(self, track_id: str) -> None:
        if self.notifier is None:
            return
        track = self._tracks[track_id]
        payload = track.to_dict()
        payload.pop("raw", None)
        self.notifier.publish(
            TRACK_UPDATED_EVENT,
            {"kind": "track", "track": payload, "row": self._row(track).to_dict()},
        )

    def _publish_playlist(self, playlist_id: str) -> None:
        if self.notifier is None:
            return
        payload = self._playlists[playlist_id].to_dict()
        payload.pop("raw", None)
        payload["trackIds"] = self.playlist_members(playlist_id)
        self.notifier.publish(PLAYLIST_UPDATED_EVENT, {"kind": "playlist", "playlist": payload})

    async def _write_track(self, track: Track) -> None:
        """Swap in a new version of a track, restoring the old one if saving fails."""
        previous = self._tracks.get(track.id)
        self._tracks[track.id] = track
        try:
            await self._persist()
        except Exception:
            if previous is None:
                self._tracks.pop(track.id, None)
            else:
                self._tracks[track.id] = previous
            logger.warning("Could not save track %s; keeping the previous version", track.id)
            raise
        self._index_memberships(track)
        self._publish_track(track.id)

    # Writes

    async def upsert_track(self, track: Track) -> bool:
        """Insert or update a track; returns whether observable state changed."""
        async with self._lock:
            existing = self._tracks.get(track.id)
            incoming = copy.deepcopy(track)
            if existing is not None:
                if existing.soundcloud_id != incoming.soundcloud_id:
                    raise ValueError(f"track id {track.id} is already bound to another source id")
                incoming.created_at = existing.created_at
                incoming.local_asset = existing.local_asset
                incoming.external_libraries = list(existing.external_libraries)
                incoming.updated_at = existing.updated_at
                if incoming.to_dict() == existing.to_dict():
                    return False
            incoming.updated_at = utcnow_iso()
            await self._write_track(incoming)
            return True

    async def upsert_playlist(self, playlist: Playlist) -> bool:
        async with self._lock:
            existing = self._playlists.get(playlist.id)
            if existing is not None and existing.to_dict() == playlist.to_dict():
                return False
            self._playlists[playlist.id] = copy.deepcopy(playlist)
            try:
                await self._persist()
            except Exception:
                if existing is None:
                    self._playlists.pop(playlist.id, None)
                else:
                    self._playlists[playlist.id] = existing
                raise
            self._publish_playlist(playlist.id)
            return True

    async def set_enrichment_status(self, track_id: str, provider: Provider, status: EnrichmentStatus) -> bool:
        async with self._lock:
            track = self._tracks.get(track_id)
            if track is None:
                raise TrackNotFoundError(track_id)
            by_provider = self._enrichment.setdefault(track_id, {})
            current = by_provider.get(provider)
            if current is not None and current.to_dict() == status.to_dict():
                return False
            previous_updated_at = track.updated_at
            by_provider[provider] = copy.deepcopy(status)
            track.updated_at = utcnow_iso()
            try:
                await self._persist()
            except Exception:
                if current is None:
                    by_provider.pop(provider, None)
                else:
                    by_provider[provider] = current
                track.updated_at = previous_updated_at
                raise
            self._publish_track(track_id)
            return True

    async def record_local_asset(self, track_id: str, asset: LocalAsset) -> bool:
        async with self._lock:
            track = self._tracks.get(track_id)
            if track is None:
                raise TrackNotFoundError(track_id)
            if track.local_asset is not None:
                previous = track.local_asset.to_dict()
                previous.pop("recorded_at")
                incoming = asset.to_dict()
                incoming.pop("recorded_at")
                if previous == incoming:
                    return False
            updated = copy.deepcopy(track)
            updated.local_asset = copy.deepcopy(asset)
            updated.updated_at = utcnow_iso()
            await self._write_track(updated)
            return True

    async def set_external_membership(self, track_id: str, library: str, present: bool) -> bool:
        async with self._lock:
            track = self._tracks.get(track_id)
            if track is None:
                raise TrackNotFoundError(track_id)
            library = library.strip().lower()
            if present == (library in track.external_libraries):
                return False
            updated = copy.deepcopy(track)
            if present:
                updated.external_libraries.append(library)
            else:
                updated.external_libraries.remove(library)
            updated.updated_at = utcnow_iso()
            await self._write_track(updated)
            return True

    # Reads

    def get_track(self, track_id: str) -> Optional[Track]:
        track = self._tracks.get(track_id)
        return copy.deepcopy(track) if track is not None else None

    def require_track(self, track_id: str) -> Track:
        track = self.get_track(track_id)
        if track is None:
            raise TrackNotFoundError(track_id)
        return track

    def list_tracks(self) -> List[Track]:
        return [copy.deepcopy(track) for _, track in sorted(self._tracks.items())]

    def has_track(self, track_id: str) -> bool:
        return track_id in self._tracks

    def get_playlist(self, playlist_id: str) -> Optional[Playlist]:
        playlist = self._playlists.get(playlist_id)
        return copy.deepcopy(playlist) if playlist is not None else None

    def playlist_members(self, playlist_id: str) -> List[str]:
        members = self._members.get(playlist_id, {})
        return [track_id for track_id, _ in sorted(members.items(), key=lambda item: (item[1], item[0]))]

    def get_enrichment_status(self, track_id: str, provider: Provider) -> EnrichmentStatus:
        status = self._enrichment.get(track_id, {}).get(provider)
        return copy.deepcopy(status) if status is not None else EnrichmentStatus()

    def statuses_for(self, track_id: str) -> Dict[Provider, EnrichmentStatus]:
        return {provider: self.get_enrichment_status(track_id, provider) for provider in Provider}

    def pairs_in_state(self, state: MatchState) -> List[Tuple[str, Provider]]:
        return [
            (track_id, provider)
            for track_id, by_provider in self._enrichment.items()
            for provider, status in by_provider.items()
            if status.state is state and track_id in self._tracks
        ]

    def track_ids_in_states(self, provider: Provider, states: Iterable[MatchState]) -> List[str]:
        wanted = set(states)
        return sorted(
            track_id
            for track_id in self._tracks
            if self.get_enrichment_status(track_id, provider).state in wanted
        )

    def list_missing_assets(self) -> List[str]:
        return sorted(
            track_id
            for track_id, track in self._tracks.items()
            if track.local_asset is None or not track.local_asset.available
        )

    def _row(self, track: Track) -> LibraryStatusRow:
        statuses = self.statuses_for(track.id)
        asset = track.local_asset
        return LibraryStatusRow(
            track_id=track.id,
            title=track.title,
            artist=track.artist,
            album=track.album,
            liked=track.liked,
            liked_at=track.liked_at,
            permalink_url=track.permalink_url,
            has_local_file=asset is not None,
            local_available=asset is not None and asset.available,
            local_location=asset.location if asset else None,
            in_external_library=bool(track.external_libraries),
            statuses=statuses,
            conflict=conflict_for(statuses),
            updated_at=track.updated_at,
        )

    def row_for(self, track_id: str) -> LibraryStatusRow:
        track = self._tracks.get(track_id)
        if track is None:
            raise TrackNotFoundError(track_id)
        return self._row(track)

    @staticmethod
    def _matches(row: LibraryStatusRow, filters: LibraryFilter) -> bool:
        if filters.missing_assets_only and row.local_available:
            return False
        if filters.unresolved_discogs_only and row.statuses[Provider.DISCOGS].resolved:
            return False
        if filters.unresolved_musicbrainz_only and row.statuses[Provider.MUSICBRAINZ].resolved:
            return False
        if filters.liked_only and not row.liked:
            return False
        if filters.external_only and not row.in_external_library:
            return False
        if filters.conflicts_only and not row.conflict:
            return False
        return True

    def list_status(
        self,
        filters: Optional[LibraryFilter] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> LibraryStatusPage:
        filters = filters or LibraryFilter()
        limit = max(1, min(MAX_PAGE_LIMIT, DEFAULT_PAGE_LIMIT if limit is None else limit))
        offset = max(0, offset or 0)

        rows = [row for row in (self._row(track) for track in self._tracks.values()) if self._matches(row, filters)]
        rows.sort(key=lambda row: row.track_id)
        rows.sort(key=lambda row: row.updated_at, reverse=True)
        return LibraryStatusPage(rows=rows[offset : offset + limit], total=len(rows), limit=limit, offset=offset)
