from __future__ import annotations

import json
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from library_sync.catalogs.base import NetworkError, RateLimitedError, UnauthorizedError
from library_sync.config import AppConfig
from library_sync.events import Event
from library_sync.library import TrackNotFoundError
from library_sync.models import LibraryFilter, LocalAsset, MatchState, Provider
from library_sync.rekordbox import RekordboxImportError
from library_sync.service import LibraryService

logger = logging.getLogger(__name__)

Lifespan = Callable[[FastAPI], AsyncContextManager[None]]


def format_sse(event: Event) -> str:
    return f"id: {event.seq}\nevent: {event.name}\ndata: {json.dumps(event.to_dict())}\n\n"


def _provider(name: str) -> Provider:
    try:
        return Provider(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Unknown provider") from exc


def _required_str(payload: Dict[str, object], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{keys[0]} missing")


def _optional_float(payload: Dict[str, object], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{key} must be a number") from exc


def build_app(*, config: AppConfig, service: LibraryService, lifespan: Optional[Lifespan] = None) -> FastAPI:
    app = FastAPI(title="SoundCloud Library Sync", lifespan=lifespan)

    @app.exception_handler(TrackNotFoundError)
    async def _track_not_found(request: Request, exc: TrackNotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.get("/api/health")
    async def health():
        return JSONResponse(
            {
                "ok": True,
                "host": config.host,
                "port": config.port,
                "disabledProviders": [
                    provider.value for provider in Provider if service.scheduler.is_disabled(provider)
                ],
            }
        )

    @app.post("/api/activity")
    async def ingest_activity(payload: Dict[str, Any]):
        context = payload.get("context") or {}
        if not isinstance(context, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid context")
        force = bool(payload.get("force", False))
        if "records" in payload:
            records = payload["records"]
            if not isinstance(records, list):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="records must be a list")
            result = await service.ingest_many(records, context, force)
        else:
            record = payload.get("record", payload)
            if not isinstance(record, dict):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid record")
            result = await service.ingest(record, context, force)
        return JSONResponse(result.to_dict())

    @app.get("/api/library/status")
    async def library_status(
        missing_assets_only: bool = Query(False, alias="missingAssetsOnly"),
        unresolved_discogs_only: bool = Query(False, alias="unresolvedDiscogsOnly"),
        unresolved_musicbrainz_only: bool = Query(False, alias="unresolvedMusicbrainzOnly"),
        liked_only: bool = Query(False, alias="likedOnly"),
        external_only: bool = Query(False, alias="externalOnly"),
        rekordbox_only: bool = Query(False, alias="rekordboxOnly"),
        conflicts_only: bool = Query(False, alias="conflictsOnly"),
        limit: Optional[int] = Query(None),
        offset: Optional[int] = Query(None),
    ):
        filters = LibraryFilter(
            missing_assets_only=missing_assets_only,
            unresolved_discogs_only=unresolved_discogs_only,
            unresolved_musicbrainz_only=unresolved_musicbrainz_only,
            liked_only=liked_only,
            external_only=external_only or rekordbox_only,
            conflicts_only=conflicts_only,
        )
        page = service.list_library_status(filters, limit, offset)
        return JSONResponse(page.to_dict())

    @app.get("/api/library/missing-assets")
    async def missing_assets():
        return JSONResponse({"trackIds": service.list_missing_assets()})

    @app.post("/api/library/rekordbox/import")
    async def import_rekordbox(payload: Dict[str, object]):
        path = _required_str(payload, "path")
        try:
            report = await service.import_rekordbox(path)
        except RekordboxImportError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return JSONResponse(report.to_dict())

    @app.post("/api/library/ignore")
    async def ignore_everywhere(payload: Dict[str, object]):
        track_id = _required_str(payload, "trackId", "track_id")
        statuses = await service.ignore_track(track_id)
        return JSONResponse({provider.value: item.to_dict() for provider, item in statuses.items()})

    @app.get("/api/tracks/{track_id}")
    async def get_track(track_id: str):
        return JSONResponse(service.get_track(track_id))

    @app.post("/api/tracks/{track_id}/local-asset")
    async def record_local_asset(track_id: str, payload: Dict[str, object]):
        location = _required_str(payload, "location")
        duration = payload.get("durationMs", payload.get("duration_ms"))
        asset = LocalAsset(
            location=location,
            available=bool(payload.get("available", True)),
            checksum=str(payload["checksum"]) if payload.get("checksum") else None,
            duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
        )
        changed = await service.record_local_asset(track_id, asset)
        return JSONResponse({"ok": True, "changed": changed})

    @app.post("/api/tracks/{track_id}/external-libraries")
    async def set_external_membership(track_id: str, payload: Dict[str, object]):
        library = _required_str(payload, "library")
        present = payload.get("present", True)
        if not isinstance(present, bool):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="present must be a boolean")
        changed = await service.set_external_membership(track_id, library, present)
        return JSONResponse({"ok": True, "changed": changed})

    @app.get("/api/{provider}/candidates/{track_id}")
    async def list_candidates(provider: str, track_id: str):
        provider_type = _provider(provider)
        try:
            candidates = await service.list_candidates(track_id, provider_type)
        except UnauthorizedError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except (NetworkError, RateLimitedError) as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return JSONResponse([candidate.to_dict() for candidate in candidates])

    @app.post("/api/{provider}/confirm")
    async def confirm_match(provider: str, payload: Dict[str, object]):
        provider_type = _provider(provider)
        track_id = _required_str(payload, "trackId", "track_id")
        release_id = _required_str(payload, "releaseId", "release_id")
        raw_payload = payload.get("rawPayload", payload.get("raw_payload"))
        if raw_payload is not None and not isinstance(raw_payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="rawPayload must be an object")
        query = payload.get("query")
        result = await service.confirm_match(
            track_id,
            provider_type,
            release_id,
            raw_payload,
            _optional_float(payload, "score"),
            str(query) if query is not None else None,
        )
        return JSONResponse(result.to_dict())

    @app.post("/api/{provider}/ignore")
    async def ignore_track(provider: str, payload: Dict[str, object]):
        provider_type = _provider(provider)
        track_id = _required_str(payload, "trackId", "track_id")
        statuses = await service.ignore_track(track_id, provider_type)
        return JSONResponse(statuses[provider_type].to_dict())

    @app.post("/api/{provider}/retry")
    async def retry_lookup(provider: str, payload: Dict[str, object]):
        provider_type = _provider(provider)
        track_id = _required_str(payload, "trackId", "track_id")
        job = await service.retry_lookup(track_id, provider_type)
        return JSONResponse(job.to_dict())

    @app.post("/api/{provider}/backfill")
    async def backfill(provider: str, payload: Optional[Dict[str, object]] = None):
        provider_type = _provider(provider)
        raw_states = (payload or {}).get("states")
        states: Optional[List[MatchState]] = None
        if raw_states is not None:
            if not isinstance(raw_states, list):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="states must be a list")
            try:
                states = [MatchState(str(item)) for item in raw_states]
            except ValueError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown state") from exc
        try:
            job = await service.backfill(provider_type, states)
        except UnauthorizedError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        return JSONResponse(job.to_dict())

    @app.post("/api/{provider}/credentials")
    async def update_credentials(provider: str, payload: Dict[str, object]):
        provider_type = _provider(provider)
        token = payload.get("token")
        if token is not None and not isinstance(token, str):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="token must be a string")
        jobs = await service.update_credentials(provider_type, token)
        return JSONResponse({"ok": True, "requeued": len(jobs)})

    @app.post("/api/likes/refresh")
    async def refresh_likes():
        event = service.refresh_likes()
        return JSONResponse(event.to_dict())

    @app.get("/api/jobs")
    async def list_jobs():
        return JSONResponse([job.to_dict() for job in service.list_jobs()])

    @app.get("/api/events")
    async def list_events(since: int = 0, limit: Optional[int] = None):
        events = service.events_since(since, limit)
        return JSONResponse(
            {"events": [event.to_dict() for event in events], "lastSeq": service.notifier.last_seq}
        )

    @app.get("/api/events/stream")
    async def stream_events(since: Optional[int] = None):
        async def _stream() -> AsyncIterator[str]:
            if since is not None:
                for event in service.events_since(since):
                    yield format_sse(event)
            async for event in service.notifier.subscribe():
                yield format_sse(event)

        return StreamingResponse(_stream(), media_type="text/event-stream")

    return app
