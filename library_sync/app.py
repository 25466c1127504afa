from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional

from fastapi import FastAPI

from library_sync.activity import ActivityNormalizer
from library_sync.catalogs import DiscogsClient, MusicBrainzClient
from library_sync.catalogs.base import CatalogClient
from library_sync.config import AppConfig, CatalogCredentials
from library_sync.events import EventNotifier
from library_sync.jobs import JobRegistry
from library_sync.library import LibraryStore
from library_sync.models import Provider
from library_sync.pairs import PairRegistry
from library_sync.resolver import AutoAcceptPolicy, CandidateResolver
from library_sync.scheduler import EnrichmentScheduler, SchedulerSettings
from library_sync.service import LibraryService
from library_sync.storage import JSONStorage
from library_sync.web import build_app


def build_clients(credentials: CatalogCredentials, timeout: float) -> Dict[Provider, CatalogClient]:
    return {
        Provider.DISCOGS: DiscogsClient(
            token=credentials.discogs_token,
            user_agent=credentials.discogs_user_agent,
            timeout=timeout,
        ),
        Provider.MUSICBRAINZ: MusicBrainzClient(
            app_name=credentials.musicbrainz_app_name,
            app_version=credentials.musicbrainz_app_version,
            contact=credentials.musicbrainz_contact,
            token=credentials.musicbrainz_token,
            timeout=timeout,
        ),
    }


def build_service(
    config: AppConfig, clients: Optional[Mapping[Provider, CatalogClient]] = None
) -> LibraryService:
    config.ensure_dirs()
    if clients is None:
        clients = build_clients(CatalogCredentials.from_env(), config.lookup_timeout_seconds)
    notifier = EventNotifier(history_size=config.event_history)
    storage = JSONStorage(config.state_path)
    store = LibraryStore(storage=storage, notifier=notifier)
    pairs = PairRegistry()
    jobs = JobRegistry(notifier=notifier, retention_seconds=config.job_retention_seconds)
    resolver = CandidateResolver(
        store=store,
        clients=clients,
        pairs=pairs,
        notifier=notifier,
        policy=AutoAcceptPolicy(threshold=config.auto_accept_threshold, margin=config.auto_accept_margin),
    )
    scheduler = EnrichmentScheduler(
        store=store,
        clients=clients,
        resolver=resolver,
        pairs=pairs,
        jobs=jobs,
        settings=SchedulerSettings.from_config(config),
    )
    normalizer = ActivityNormalizer(track_baseline=store.get_track, playlist_baseline=store.get_playlist)
    return LibraryService(
        store=store,
        normalizer=normalizer,
        scheduler=scheduler,
        resolver=resolver,
        jobs=jobs,
        notifier=notifier,
    )


def create_app(
    config: AppConfig | None = None, clients: Optional[Mapping[Provider, CatalogClient]] = None
) -> FastAPI:
    config = config or AppConfig()
    service = build_service(config, clients)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = build_app(config=config, service=service, lifespan=lifespan)
    app.state.config = config
    app.state.service = service
    return app
