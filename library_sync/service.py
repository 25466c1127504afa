from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from library_sync.activity import ActivityNormalizer, Observation
from library_sync.events import LIKES_REFRESH_EVENT, Event, EventNotifier
from library_sync.jobs import JobRegistry
from library_sync.library import LibraryStore
from library_sync.models import (
    Candidate,
    EnrichmentStatus,
    Job,
    LibraryFilter,
    LibraryStatusPage,
    LocalAsset,
    MatchState,
    Provider,
    utcnow_iso,
)
from library_sync.rekordbox import RekordboxImporter, RekordboxImportReport
from library_sync.resolver import CandidateResolver
from library_sync.scheduler import EnrichmentScheduler

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    track_ids: List[str] = field(default_factory=list)
    playlist_id: Optional[str] = None
    job_ids: List[str] = field(default_factory=list)

    def merge(self, other: "IngestResult") -> None:
        self.track_ids.extend(other.track_ids)
        if other.playlist_id:
            self.playlist_id = other.playlist_id
        self.job_ids.extend(other.job_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {"updatedTracks": self.track_ids, "updatedPlaylist": self.playlist_id, "jobs": self.job_ids}


class LibraryService:
    """Command surface shared by the HTTP adapter and in-process callers."""

    def __init__(
        self,
        store: LibraryStore,
        normalizer: ActivityNormalizer,
        scheduler: EnrichmentScheduler,
        resolver: CandidateResolver,
        jobs: JobRegistry,
        notifier: EventNotifier,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.scheduler = scheduler
        self.resolver = resolver
        self.jobs = jobs
        self.notifier = notifier
        self.rekordbox = RekordboxImporter(store)

    async def start(self) -> None:
        await self.store.load()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def ingest(
        self,
        record: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
        force: bool = False,
    ) -> IngestResult:
        observation = self.normalizer.normalize(record, context, force)
        try:
            return await self._apply(observation, force)
        except Exception:
            self.normalizer.forget(observation)
            raise

    async def _apply(self, observation: Observation, force: bool) -> IngestResult:
        result = IngestResult()
        for track in observation.tracks:
            changed = await self.store.upsert_track(track)
            if not changed and not force:
                continue
            result.track_ids.append(track.id)
            stored = self.store.get_track(track.id)
            if stored is not None:
                result.job_ids.extend(job.id for job in await self.scheduler.schedule_for(stored))
        if observation.playlist is not None and await self.store.upsert_playlist(observation.playlist):
            result.playlist_id = observation.playlist.id
        return result

    async def ingest_many(
        self,
        records: Iterable[Mapping[str, Any]],
        context: Optional[Mapping[str, Any]] = None,
        force: bool = False,
    ) -> IngestResult:
        result = IngestResult()
        for record in records:
            result.merge(await self.ingest(record, context, force))
        return result

    def list_library_status(
        self,
        filters: Optional[LibraryFilter] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> LibraryStatusPage:
        return self.store.list_status(filters, limit, offset)

    def get_track(self, track_id: str) -> Dict[str, Any]:
        track = self.store.require_track(track_id)
        payload = track.to_dict()
        payload["row"] = self.store.row_for(track_id).to_dict()
        payload["enrichment"] = {
            provider.value: status.to_dict() for provider, status in self.store.statuses_for(track_id).items()
        }
        return payload

    async def list_candidates(self, track_id: str, provider: Provider) -> List[Candidate]:
        return await self.resolver.list_candidates(track_id, provider)

    async def confirm_match(
        self,
        track_id: str,
        provider: Provider,
        release_id: str,
        raw_payload: Optional[Dict[str, Any]] = None,
        score: Optional[float] = None,
        query: Optional[str] = None,
    ) -> EnrichmentStatus:
        return await self.resolver.confirm(track_id, provider, release_id, raw_payload, score, query)

    async def ignore_track(
        self, track_id: str, provider: Optional[Provider] = None
    ) -> Dict[Provider, EnrichmentStatus]:
        return await self.resolver.ignore(track_id, provider)

    async def retry_lookup(self, track_id: str, provider: Provider) -> Job:
        return await self.scheduler.retry(track_id, provider)

    async def backfill(self, provider: Provider, states: Optional[Iterable[MatchState]] = None) -> Job:
        return await self.scheduler.backfill(provider, states)

    async def update_credentials(self, provider: Provider, token: Optional[str]) -> List[Job]:
        return await self.scheduler.update_credentials(provider, token)

    def refresh_likes(self) -> Event:
        forgotten = self.normalizer.forget_likes()
        logger.info("Requested likes refresh; %d liked tracks will be re-read", forgotten)
        return self.notifier.publish(LIKES_REFRESH_EVENT, {"requestedAt": utcnow_iso(), "known": forgotten})

    async def record_local_asset(self, track_id: str, asset: LocalAsset) -> bool:
        return await self.store.record_local_asset(track_id, asset)

    async def set_external_membership(self, track_id: str, library: str, present: bool) -> bool:
        return await self.store.set_external_membership(track_id, library, present)

    async def import_rekordbox(self, path: str) -> RekordboxImportReport:
        return await self.rekordbox.import_file(path)

    def list_missing_assets(self) -> List[str]:
        return self.store.list_missing_assets()

    def list_jobs(self) -> List[Job]:
        return self.jobs.list()

    def events_since(self, seq: int = 0, limit: Optional[int] = None) -> List[Event]:
        return self.notifier.since(seq, limit)
