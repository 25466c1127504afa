from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

TRACK_ID_PREFIX = "soundcloud:tracks:"
PLAYLIST_ID_PREFIX = "soundcloud:playlists:"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def track_id_for(soundcloud_id: int) -> str:
    return f"{TRACK_ID_PREFIX}{soundcloud_id}"


def playlist_id_for(soundcloud_id: int) -> str:
    return f"{PLAYLIST_ID_PREFIX}{soundcloud_id}"


class Provider(str, Enum):
    DISCOGS = "discogs"
    MUSICBRAINZ = "musicbrainz"

    @property
    def display_name(self) -> str:
        return "Discogs" if self is Provider.DISCOGS else "MusicBrainz"


class MatchState(str, Enum):
    UNCHECKED = "unchecked"
    RUNNING = "running"
    SUCCESS = "success"
    AMBIGUOUS = "ambiguous"
    ERROR = "error"
    IGNORED = "ignored"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.ERROR)


@dataclass
class LocalAsset:
    location: str
    available: bool = True
    checksum: Optional[str] = None
    duration_ms: Optional[int] = None
    recorded_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "available": self.available,
            "checksum": self.checksum,
            "duration_ms": self.duration_ms,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LocalAsset":
        return cls(
            location=payload["location"],
            available=bool(payload.get("available", True)),
            checksum=payload.get("checksum"),
            duration_ms=payload.get("duration_ms"),
            recorded_at=payload.get("recorded_at") or utcnow_iso(),
        )


@dataclass
class Track:
    id: str
    soundcloud_id: int
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration_ms: Optional[int] = None
    artwork_url: Optional[str] = None
    permalink_url: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    liked: bool = False
    liked_at: Optional[str] = None
    playlists: Dict[str, int] = field(default_factory=dict)
    source: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    local_asset: Optional[LocalAsset] = None
    external_libraries: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def signature_fields(self) -> Dict[str, Any]:
        """Mutable fields observed from the web session, in a stable order."""
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "duration_ms": self.duration_ms,
            "artwork_url": self.artwork_url,
            "permalink_url": self.permalink_url,
            "tags": sorted(tag.lower() for tag in self.tags),
            "liked": self.liked,
            "liked_at": self.liked_at,
            "playlists": sorted(self.playlists.items()),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "soundcloud_id": self.soundcloud_id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "duration_ms": self.duration_ms,
            "artwork_url": self.artwork_url,
            "permalink_url": self.permalink_url,
            "tags": list(self.tags),
            "liked": self.liked,
            "liked_at": self.liked_at,
            "playlists": dict(self.playlists),
            "source": self.source,
            "raw": self.raw,
            "local_asset": self.local_asset.to_dict() if self.local_asset else None,
            "external_libraries": list(self.external_libraries),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Track":
        asset = payload.get("local_asset")
        return cls(
            id=payload["id"],
            soundcloud_id=int(payload["soundcloud_id"]),
            title=payload.get("title"),
            artist=payload.get("artist"),
            album=payload.get("album"),
            duration_ms=payload.get("duration_ms"),
            artwork_url=payload.get("artwork_url"),
            permalink_url=payload.get("permalink_url"),
            tags=list(payload.get("tags") or []),
            liked=bool(payload.get("liked", False)),
            liked_at=payload.get("liked_at"),
            playlists={key: int(value) for key, value in (payload.get("playlists") or {}).items()},
            source=payload.get("source"),
            raw=dict(payload.get("raw") or {}),
            local_asset=LocalAsset.from_dict(asset) if asset else None,
            external_libraries=list(payload.get("external_libraries") or []),
            created_at=payload.get("created_at") or utcnow_iso(),
            updated_at=payload.get("updated_at") or utcnow_iso(),
        )


@dataclass
class Playlist:
    id: str
    soundcloud_id: int
    title: Optional[str] = None
    permalink_url: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    track_count: int = 0
    updated_at: Optional[str] = None
    source: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def signature_fields(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "permalink_url": self.permalink_url,
            "tags": sorted(tag.lower() for tag in self.tags),
            "track_count": self.track_count,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "soundcloud_id": self.soundcloud_id,
            "title": self.title,
            "permalink_url": self.permalink_url,
            "tags": list(self.tags),
            "track_count": self.track_count,
            "updated_at": self.updated_at,
            "source": self.source,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Playlist":
        return cls(
            id=payload["id"],
            soundcloud_id=int(payload["soundcloud_id"]),
            title=payload.get("title"),
            permalink_url=payload.get("permalink_url"),
            tags=list(payload.get("tags") or []),
            track_count=int(payload.get("track_count") or 0),
            updated_at=payload.get("updated_at"),
            source=payload.get("source"),
            raw=dict(payload.get("raw") or {}),
        )


@dataclass
class EnrichmentStatus:
    state: MatchState = MatchState.UNCHECKED
    release_id: Optional[str] = None
    confidence: Optional[float] = None
    checked_at: Optional[str] = None
    message: Optional[str] = None
    query: Optional[str] = None
    error_code: Optional[str] = None
    confirmed: bool = False
    payload: Optional[Dict[str, Any]] = None

    @property
    def resolved(self) -> bool:
        return self.state is MatchState.SUCCESS and self.release_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "release_id": self.release_id,
            "confidence": self.confidence,
            "checked_at": self.checked_at,
            "message": self.message,
            "query": self.query,
            "error_code": self.error_code,
            "confirmed": self.confirmed,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EnrichmentStatus":
        return cls(
            state=MatchState(payload.get("state", MatchState.UNCHECKED.value)),
            release_id=payload.get("release_id"),
            confidence=payload.get("confidence"),
            checked_at=payload.get("checked_at"),
            message=payload.get("message"),
            query=payload.get("query"),
            error_code=payload.get("error_code"),
            confirmed=bool(payload.get("confirmed", False)),
            payload=payload.get("payload"),
        )


@dataclass
class Candidate:
    match_id: str
    provider: Provider
    release_id: str
    score: float
    title: Optional[str] = None
    year: Optional[int] = None
    country: Optional[str] = None
    thumb: Optional[str] = None
    resource_url: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matchId": self.match_id,
            "provider": self.provider.value,
            "releaseId": self.release_id,
            "score": self.score,
            "title": self.title,
            "year": self.year,
            "country": self.country,
            "thumb": self.thumb,
            "resourceUrl": self.resource_url,
            "rawPayload": self.raw_payload,
        }


@dataclass
class SearchQuery:
    text: str
    artist: Optional[str] = None
    title: Optional[str] = None
    album: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.text.strip()


@dataclass
class Job:
    id: str
    label: str
    state: JobState = JobState.QUEUED
    completed: int = 0
    total: Optional[int] = None
    message: Optional[str] = None
    provider: Optional[Provider] = None
    track_id: Optional[str] = None
    parent_id: Optional[str] = None
    generation: int = 0
    attempts: int = 0
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "state": self.state.value,
            "completed": self.completed,
            "total": self.total,
            "message": self.message,
            "provider": self.provider.value if self.provider else None,
            "trackId": self.track_id,
            "parentId": self.parent_id,
            "updatedAt": self.updated_at,
        }


@dataclass
class LibraryFilter:
    missing_assets_only: bool = False
    unresolved_discogs_only: bool = False
    unresolved_musicbrainz_only: bool = False
    liked_only: bool = False
    external_only: bool = False
    conflicts_only: bool = False


@dataclass
class LibraryStatusRow:
    track_id: str
    title: Optional[str]
    artist: Optional[str]
    album: Optional[str]
    liked: bool
    liked_at: Optional[str]
    permalink_url: Optional[str]
    has_local_file: bool
    local_available: bool
    local_location: Optional[str]
    in_external_library: bool
    statuses: Dict[Provider, EnrichmentStatus]
    conflict: bool
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "trackId": self.track_id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "liked": self.liked,
            "likedAt": self.liked_at,
            "permalinkUrl": self.permalink_url,
            "hasLocalFile": self.has_local_file,
            "localAvailable": self.local_available,
            "localLocation": self.local_location,
            "inExternalLibrary": self.in_external_library,
            "conflict": self.conflict,
            "updatedAt": self.updated_at,
        }
        for provider, status in self.statuses.items():
            prefix = provider.value
            payload[f"{prefix}Status"] = status.state.value
            payload[f"{prefix}ReleaseId"] = status.release_id
            payload[f"{prefix}Confidence"] = status.confidence
            payload[f"{prefix}CheckedAt"] = status.checked_at
            payload[f"{prefix}Message"] = status.message
            payload[f"{prefix}ErrorCode"] = status.error_code
        payload["matched"] = self.statuses[Provider.DISCOGS].resolved
        return payload


@dataclass
class LibraryStatusPage:
    rows: List[LibraryStatusRow]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": [row.to_dict() for row in self.rows],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }
