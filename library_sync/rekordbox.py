"""Import local file locations from a Rekordbox XML collection export."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from rapidfuzz import fuzz, utils

from library_sync.library import LibraryStore
from library_sync.models import LocalAsset, Track

logger = logging.getLogger(__name__)

REKORDBOX_LIBRARY = "rekordbox"
TITLE_MATCH_THRESHOLD = 92.0
_CHUNK_SIZE = 64 * 1024


class RekordboxImportError(ValueError):
    """Raised when an export cannot be read or is not Rekordbox XML."""


@dataclass
class RekordboxEntry:
    rekordbox_id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    location: Optional[str] = None
    path: Optional[str] = None
    checksum: Optional[str] = None
    duration_ms: Optional[int] = None
    available: bool = False

    def asset(self) -> Optional[LocalAsset]:
        if not self.path:
            return None
        return LocalAsset(
            location=self.path,
            available=self.available,
            checksum=self.checksum,
            duration_ms=self.duration_ms,
        )


@dataclass
class RekordboxImportReport:
    entries: int = 0
    matched: Dict[str, List[str]] = field(default_factory=dict)
    unmatched: List[str] = field(default_factory=list)
    updated_tracks: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "updatedTracks": self.updated_tracks,
        }


def decode_location(value: str) -> Optional[str]:
    """Turn a Rekordbox ``Location`` attribute into a filesystem path."""
    value = value.strip()
    if not value:
        return None
    if not value.lower().startswith("file:"):
        return value
    parsed = urlparse(value)
    if parsed.netloc and parsed.netloc != "localhost":
        # UNC share, e.g. file://nas/music/a.mp3
        return f"//{parsed.netloc}{unquote(parsed.path)}"
    return url2pathname(parsed.path)


def _checksum(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _duration_ms(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return int(seconds * 1000) if seconds > 0 else None


def _entry(element: ET.Element) -> Optional[RekordboxEntry]:
    rekordbox_id = element.get("RekordboxID") or element.get("TrackID")
    if not rekordbox_id:
        logger.warning("Skipping Rekordbox track without an identifier: %r", element.get("Name"))
        return None
    entry = RekordboxEntry(
        rekordbox_id=rekordbox_id,
        title=element.get("Name"),
        artist=element.get("Artist"),
        album=element.get("Album"),
        location=element.get("Location"),
        duration_ms=_duration_ms(element.get("TotalTime")),
    )
    if entry.location:
        entry.path = decode_location(entry.location)
    if entry.path and os.path.isfile(entry.path):
        entry.available = True
        try:
            entry.checksum = _checksum(entry.path)
        except OSError as exc:
            logger.warning("Could not hash %s for Rekordbox entry %s: %s", entry.path, rekordbox_id, exc)
    return entry


def read_export(path: str) -> List[RekordboxEntry]:
    """Parse the ``COLLECTION`` of a ``DJ_PLAYLISTS`` export; blocking."""
    try:
        root = ET.parse(path).getroot()
    except FileNotFoundError as exc:
        raise RekordboxImportError(f"export not found: {path}") from exc
    except (ET.ParseError, OSError) as exc:
        raise RekordboxImportError(f"could not read Rekordbox export {path}: {exc}") from exc
    if root.tag != "DJ_PLAYLISTS":
        raise RekordboxImportError(f"{path} is not a Rekordbox XML export")
    collection = root.find("COLLECTION")
    if collection is None:
        return []
    entries = []
    for element in collection.findall("TRACK"):
        entry = _entry(element)
        if entry is not None:
            entries.append(entry)
    return entries


def _key(value: Optional[str]) -> str:
    return utils.default_process(value or "")


class TrackMatcher:
    """Finds library tracks for a Rekordbox entry by artist and title.

    An exact match on the normalized artist and title wins. Otherwise the
    title is compared fuzzily against tracks by the same normalized artist.
    """

    def __init__(self, tracks: List[Track], threshold: float = TITLE_MATCH_THRESHOLD) -> None:
        self.threshold = threshold
        self._exact: Dict[Tuple[str, str], List[str]] = {}
        self._by_artist: Dict[str, List[Tuple[str, str]]] = {}
        for track in tracks:
            artist, title = _key(track.artist), _key(track.title)
            if not title:
                continue
            self._exact.setdefault((artist, title), []).append(track.id)
            self._by_artist.setdefault(artist, []).append((title, track.id))

    def match(self, entry: RekordboxEntry) -> List[str]:
        artist, title = _key(entry.artist), _key(entry.title)
        if not title:
            return []
        exact = self._exact.get((artist, title))
        if exact:
            return list(exact)
        best: List[str] = []
        best_score = 0.0
        for candidate, track_id in self._by_artist.get(artist, []):
            score = fuzz.token_set_ratio(title, candidate)
            if score < self.threshold or score < best_score:
                continue
            if score > best_score:
                best, best_score = [], score
            best.append(track_id)
        return best


class RekordboxImporter:
    def __init__(self, store: LibraryStore, threshold: float = TITLE_MATCH_THRESHOLD) -> None:
        self.store = store
        self.threshold = threshold

    async def import_file(self, path: str) -> RekordboxImportReport:
        entries = await asyncio.to_thread(read_export, path)
        matcher = TrackMatcher(self.store.list_tracks(), self.threshold)
        report = RekordboxImportReport(entries=len(entries))
        updated = set()
        for entry in entries:
            track_ids = matcher.match(entry)
            if not track_ids:
                report.unmatched.append(entry.rekordbox_id)
                continue
            report.matched[entry.rekordbox_id] = track_ids
            asset = entry.asset()
            for track_id in track_ids:
                changed = await self.store.set_external_membership(track_id, REKORDBOX_LIBRARY, True)
                if asset is not None and await self.store.record_local_asset(track_id, asset):
                    changed = True
                if changed:
                    updated.add(track_id)
        report.updated_tracks = sorted(updated)
        logger.info(
            "Imported Rekordbox export %s: %d entries, %d matched, %d tracks updated",
            path,
            report.entries,
            len(report.matched),
            len(report.updated_tracks),
        )
        return report
