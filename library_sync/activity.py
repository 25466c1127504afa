from __future__ import annotations

import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from library_sync.models import (
    PLAYLIST_ID_PREFIX,
    TRACK_ID_PREFIX,
    Playlist,
    Track,
    playlist_id_for,
    track_id_for,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r'"([^"]*)"|(\S+)')
ALBUM_TAG_PREFIX = "album:"


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_numeric_id(value: Any, prefix: str) -> Optional[int]:
    """Accept 123, "123" or the canonical "soundcloud:<kind>:123" form."""
    if isinstance(value, str) and value.startswith(prefix):
        value = value[len(prefix) :]
    number = _int(value)
    if number is None or number <= 0:
        return None
    return number


def parse_tag_list(tag_list: str) -> List[str]:
    tags = []
    for quoted, bare in TAG_PATTERN.findall(tag_list):
        tag = (quoted or bare).strip()
        if tag:
            tags.append(tag)
    return tags


def dedupe_tags(tags: List[str]) -> List[str]:
    seen = set()
    result = []
    for tag in tags:
        key = tag.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(tag)
    return result


def album_from_tags(tags: List[str]) -> Optional[str]:
    for tag in tags:
        if tag.lower().startswith(ALBUM_TAG_PREFIX):
            album = tag[len(ALBUM_TAG_PREFIX) :].strip()
            if album:
                return album
    return None


def signature(fields: Mapping[str, Any]) -> str:
    raw = json.dumps(fields, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


@dataclass
class Observation:
    """Entities whose content changed as a result of one activity record."""

    tracks: List[Track] = field(default_factory=list)
    playlist: Optional[Playlist] = None

    @property
    def empty(self) -> bool:
        return not self.tracks and self.playlist is None


class ActivityNormalizer:
    """Turns raw records observed in the web session into canonical entities.

    The normalizer remembers the last canonical entity and its content
    signature per id. New observations are merged over what is known and
    only forwarded when the signature moved.
    """

    def __init__(
        self,
        track_baseline: Optional[Callable[[str], Optional[Track]]] = None,
        playlist_baseline: Optional[Callable[[str], Optional[Playlist]]] = None,
    ) -> None:
        self._track_baseline = track_baseline
        self._playlist_baseline = playlist_baseline
        self._tracks: Dict[str, Track] = {}
        self._track_signatures: Dict[str, str] = {}
        self._playlists: Dict[str, Playlist] = {}
        self._playlist_signatures: Dict[str, str] = {}

    def normalize(
        self,
        record: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
        force: bool = False,
    ) -> Observation:
        if not isinstance(record, Mapping):
            logger.debug("Rejecting non-object activity record")
            return Observation()
        context = context or {}
        kind = _text(record.get("kind")) or ("playlist" if "tracks" in record else "track")
        if kind == "like":
            nested = record.get("track")
            if not isinstance(nested, Mapping):
                logger.debug("Rejecting like record without a track")
                return Observation()
            liked_context = dict(context)
            liked_context.setdefault("likedAt", _first(record, "created_at", "createdAt") or utcnow_iso())
            return self.normalize(nested, liked_context, force)
        if kind == "track":
            track = self._normalize_track(record, context, force)
            return Observation(tracks=[track] if track else [])
        if kind == "playlist":
            return self._normalize_playlist(record, context, force)
        logger.debug("Rejecting activity record of kind %r", kind)
        return Observation()

    def forget_likes(self) -> int:
        """Forget signatures of liked tracks so their next observation is forwarded."""
        liked = [track_id for track_id, track in self._tracks.items() if track.liked]
        for track_id in liked:
            self._track_signatures.pop(track_id, None)
        return len(liked)

    def forget(self, observation: Observation) -> None:
        """Drop what was learned from an observation that could not be stored.

        The next delivery of the same record is then merged over the stored
        baseline again and forwarded.
        """
        for track in observation.tracks:
            self._tracks.pop(track.id, None)
            self._track_signatures.pop(track.id, None)
        if observation.playlist is not None:
            self._playlists.pop(observation.playlist.id, None)
            self._playlist_signatures.pop(observation.playlist.id, None)

    def _known_track(self, track_id: str) -> Optional[Track]:
        track = self._tracks.get(track_id)
        if track is None and self._track_baseline is not None:
            track = self._track_baseline(track_id)
            if track is not None:
                self._tracks[track_id] = track
                self._track_signatures[track_id] = signature(track.signature_fields())
        return track

    def _known_playlist(self, playlist_id: str) -> Optional[Playlist]:
        playlist = self._playlists.get(playlist_id)
        if playlist is None and self._playlist_baseline is not None:
            playlist = self._playlist_baseline(playlist_id)
            if playlist is not None:
                self._playlists[playlist_id] = playlist
                self._playlist_signatures[playlist_id] = signature(playlist.signature_fields())
        return playlist

    def _normalize_track(
        self, record: Mapping[str, Any], context: Mapping[str, Any], force: bool
    ) -> Optional[Track]:
        soundcloud_id = parse_numeric_id(
            _first(record, "id", "soundcloudId", "soundcloud_id", "trackId", "track_id"), TRACK_ID_PREFIX
        )
        if soundcloud_id is None:
            logger.debug("Rejecting track record without a numeric id")
            return None
        track_id = track_id_for(soundcloud_id)
        previous = self._known_track(track_id)
        track = copy.deepcopy(previous) if previous else Track(id=track_id, soundcloud_id=soundcloud_id)

        title = _text(record.get("title"))
        if title is not None:
            track.title = title
        user = record.get("user") if isinstance(record.get("user"), Mapping) else {}
        artist = _text(_first(record, "artist")) or _text(user.get("username"))
        if artist is not None:
            track.artist = artist
        duration = _int(_first(record, "durationMs", "duration_ms", "duration", "full_duration"))
        if duration is not None:
            track.duration_ms = duration
        artwork = _text(_first(record, "artworkUrl", "artwork_url"))
        if artwork is not None:
            track.artwork_url = artwork
        permalink = _text(_first(record, "permalinkUrl", "permalink_url"))
        if permalink is not None:
            track.permalink_url = permalink

        tags = self._tags(record)
        if tags is not None:
            track.tags = tags
        album = _text(record.get("album")) or (album_from_tags(tags) if tags else None)
        if album is not None:
            track.album = album

        liked_at = _text(_first(record, "likedAt", "liked_at")) or _text(
            _first(context, "likedAt", "liked_at")
        )
        liked = record.get("liked")
        if liked is False:
            track.liked = False
            track.liked_at = None
        elif liked is True or liked_at is not None:
            track.liked = True
            track.liked_at = liked_at or track.liked_at or utcnow_iso()

        playlist_id = _first(context, "playlistId", "playlist_id")
        if playlist_id is not None:
            playlist_number = parse_numeric_id(playlist_id, PLAYLIST_ID_PREFIX)
            position = _int(_first(context, "playlistPosition", "playlist_position"))
            if playlist_number is not None:
                track.playlists[playlist_id_for(playlist_number)] = position if position is not None else 0

        source = _text(_first(context, "source")) or _text(record.get("source"))
        if source is not None:
            track.source = source
        track.raw = dict(record)

        digest = signature(track.signature_fields())
        self._tracks[track_id] = track
        if not force and self._track_signatures.get(track_id) == digest:
            return None
        self._track_signatures[track_id] = digest
        return copy.deepcopy(track)

    def _normalize_playlist(
        self, record: Mapping[str, Any], context: Mapping[str, Any], force: bool
    ) -> Observation:
        soundcloud_id = parse_numeric_id(
            _first(record, "id", "soundcloudId", "soundcloud_id", "playlistId", "playlist_id"),
            PLAYLIST_ID_PREFIX,
        )
        if soundcloud_id is None:
            logger.debug("Rejecting playlist record without a numeric id")
            return Observation()
        playlist_id = playlist_id_for(soundcloud_id)
        previous = self._known_playlist(playlist_id)
        playlist = (
            copy.deepcopy(previous) if previous else Playlist(id=playlist_id, soundcloud_id=soundcloud_id)
        )

        title = _text(record.get("title"))
        if title is not None:
            playlist.title = title
        permalink = _text(_first(record, "permalinkUrl", "permalink_url"))
        if permalink is not None:
            playlist.permalink_url = permalink
        tags = self._tags(record)
        if tags is not None:
            playlist.tags = tags
        members = record.get("tracks")
        members = [member for member in members if isinstance(member, Mapping)] if isinstance(members, list) else None
        track_count = _int(_first(record, "trackCount", "track_count"))
        if track_count is not None:
            playlist.track_count = track_count
        elif members is not None:
            playlist.track_count = len(members)
        updated_at = _text(_first(record, "updatedAt", "updated_at", "last_modified", "lastModified"))
        if updated_at is not None:
            playlist.updated_at = updated_at
        source = _text(_first(context, "source")) or _text(record.get("source"))
        if source is not None:
            playlist.source = source
        playlist.raw = {key: value for key, value in record.items() if key != "tracks"}

        observation = Observation()
        for index, member in enumerate(members or []):
            member_context = dict(context)
            member_context["playlistId"] = playlist_id
            member_context["playlistPosition"] = _int(member.get("position")) if "position" in member else index
            member_context.pop("likedAt", None)
            track = self._normalize_track(member, member_context, force)
            if track is not None:
                observation.tracks.append(track)

        digest = signature(playlist.signature_fields())
        self._playlists[playlist_id] = playlist
        if force or self._playlist_signatures.get(playlist_id) != digest:
            self._playlist_signatures[playlist_id] = digest
            observation.playlist = copy.deepcopy(playlist)
        return observation

    @staticmethod
    def _tags(record: Mapping[str, Any]) -> Optional[List[str]]:
        tags: Optional[List[str]] = None
        raw_tags = record.get("tags")
        if isinstance(raw_tags, list):
            tags = [str(tag).strip() for tag in raw_tags if str(tag).strip()]
        tag_list = _first(record, "tagList", "tag_list")
        if isinstance(tag_list, str):
            tags = (tags or []) + parse_tag_list(tag_list)
        genre = _text(record.get("genre"))
        if genre is not None:
            tags = [genre] + (tags or [])
        return dedupe_tags(tags) if tags is not None else None
