from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from library_sync.catalogs.base import (
    TRANSIENT_ERRORS,
    CatalogClient,
    CatalogError,
    MalformedResponseError,
    NetworkError,
    UnauthorizedError,
)
from library_sync.config import AppConfig
from library_sync.jobs import JobRegistry
from library_sync.library import LibraryStore
from library_sync.models import EnrichmentStatus, Job, JobState, MatchState, Provider, SearchQuery, Track
from library_sync.pairs import PairKey, PairRegistry
from library_sync.resolver import CandidateResolver

logger = logging.getLogger(__name__)

BACKFILL_STATES = (MatchState.UNCHECKED, MatchState.ERROR)


@dataclass
class SchedulerSettings:
    workers_per_provider: int = 2
    lookup_timeout_seconds: float = 20.0
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: AppConfig) -> "SchedulerSettings":
        return cls(
            workers_per_provider=config.workers_per_provider,
            lookup_timeout_seconds=config.lookup_timeout_seconds,
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
        )

    def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


@dataclass
class LookupTask:
    job_id: str
    track_id: str
    provider: Provider
    generation: int
    attempt: int = 1
    settled: bool = False

    @property
    def key(self) -> PairKey:
        return (self.track_id, self.provider)


class EnrichmentScheduler:
    """Runs catalog lookups on a bounded worker pool per provider.

    At most one lookup is in flight per (track, provider). Results are
    committed through the resolver, which drops them when the pair's
    generation moved while the lookup was running.
    """

    def __init__(
        self,
        store: LibraryStore,
        clients: Mapping[Provider, CatalogClient],
        resolver: CandidateResolver,
        pairs: PairRegistry,
        jobs: JobRegistry,
        settings: Optional[SchedulerSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.clients = clients
        self.resolver = resolver
        self.pairs = pairs
        self.jobs = jobs
        self.settings = settings or SchedulerSettings()
        self._sleep = sleep
        self._queues: Dict[Provider, asyncio.Queue] = {provider: asyncio.Queue() for provider in clients}
        self._workers: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._inflight: Dict[PairKey, LookupTask] = {}
        self._disabled: Set[Provider] = set()
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # Lifecycle

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        for provider in self.clients:
            for index in range(max(1, self.settings.workers_per_provider)):
                self._workers.append(
                    asyncio.create_task(self._worker(provider), name=f"{provider.value}-lookup-{index}")
                )
        recovered = 0
        for track_id, provider in self.store.pairs_in_state(MatchState.RUNNING):
            if provider in self.clients:
                await self.enqueue(track_id, provider)
                recovered += 1
        logger.info("Enrichment scheduler started; recovered %d interrupted lookups", recovered)

    async def stop(self) -> None:
        tasks = self._workers + list(self._delayed)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Enrichment scheduler stopped")

    async def wait_idle(self) -> None:
        await self._idle.wait()

    # Commands

    def is_disabled(self, provider: Provider) -> bool:
        return provider in self._disabled

    def inflight_job(self, track_id: str, provider: Provider) -> Optional[Job]:
        task = self._inflight.get((track_id, provider))
        return self.jobs.get(task.job_id) if task else None

    def should_enqueue(self, track: Track, provider: Provider) -> bool:
        if provider not in self.clients or provider in self._disabled:
            return False
        status = self.store.get_enrichment_status(track.id, provider)
        if status.state in (MatchState.IGNORED, MatchState.RUNNING):
            return False
        if status.state in (MatchState.UNCHECKED, MatchState.ERROR):
            return True
        if status.confirmed:
            return False
        query = self.clients[provider].build_query(track)
        return query.text != (status.query or "")

    async def schedule_for(self, track: Track) -> List[Job]:
        jobs = []
        for provider in self.clients:
            if self.should_enqueue(track, provider):
                jobs.append(await self.enqueue(track.id, provider))
        return jobs

    async def enqueue(self, track_id: str, provider: Provider, parent_id: Optional[str] = None) -> Job:
        """Queue a lookup; returns the in-flight job instead when one exists."""
        track = self.store.require_track(track_id)
        existing = self._inflight.get((track_id, provider))
        if existing is not None:
            job = self.jobs.get(existing.job_id)
            if job is not None:
                return job
        return await self._submit(track, provider, self.pairs.generation(track_id, provider), parent_id)

    async def retry(self, track_id: str, provider: Provider, parent_id: Optional[str] = None) -> Job:
        """Re-run the lookup unconditionally, superseding anything in flight."""
        track = self.store.require_track(track_id)
        generation = self.pairs.bump(track_id, provider)
        previous = self._inflight.pop((track_id, provider), None)
        if previous is not None:
            self.jobs.update(previous.job_id, state=JobState.COMPLETED, message="superseded by retry")
        if provider in self._disabled:
            logger.info("Re-enabling %s lookups after explicit retry", provider.display_name)
            self._disabled.discard(provider)
        return await self._submit(track, provider, generation, parent_id)

    async def backfill(self, provider: Provider, states: Optional[Iterable[MatchState]] = None) -> Job:
        client = self.clients[provider]
        if provider in self._disabled:
            if not client.is_configured():
                raise UnauthorizedError(client.missing_credentials_message)
            self._disabled.discard(provider)
        wanted = tuple(states) if states else BACKFILL_STATES
        track_ids = [
            track_id
            for track_id in self.store.track_ids_in_states(provider, wanted)
            if (track_id, provider) not in self._inflight
        ]
        parent = self.jobs.create(
            f"{provider.display_name} backfill",
            provider=provider,
            total=None,
            state=JobState.RUNNING,
            message=f"{len(track_ids)} tracks",
        )
        submitted = 0
        for track_id in track_ids:
            if (track_id, provider) in self._inflight:
                continue
            await self.enqueue(track_id, provider, parent_id=parent.id)
            submitted += 1
        self.jobs.set_total(parent.id, submitted)
        logger.info("Backfill queued %d %s lookups", submitted, provider.display_name)
        return self.jobs.get(parent.id) or parent

    async def update_credentials(self, provider: Provider, token: Optional[str]) -> List[Job]:
        self.clients[provider].set_token(token)
        self._disabled.discard(provider)
        jobs = []
        for track_id in self.store.track_ids_in_states(provider, (MatchState.ERROR,)):
            status = self.store.get_enrichment_status(track_id, provider)
            if status.error_code == UnauthorizedError.code:
                jobs.append(await self.enqueue(track_id, provider))
        logger.info("Updated %s credentials; re-queued %d lookups", provider.display_name, len(jobs))
        return jobs

    # Internals

    async def _submit(self, track: Track, provider: Provider, generation: int, parent_id: Optional[str]) -> Job:
        title = " - ".join(part for part in (track.artist, track.title) if part) or track.id
        job = self.jobs.create(
            f"{provider.display_name} lookup: {title}",
            provider=provider,
            track_id=track.id,
            parent_id=parent_id,
            generation=generation,
        )
        task = LookupTask(job_id=job.id, track_id=track.id, provider=provider, generation=generation)
        self._inflight[task.key] = task
        self._pending += 1
        self._idle.clear()

        try:
            async with self.pairs.lock(track.id, provider):
                if self.pairs.is_current(track.id, provider, generation):
                    previous = self.store.get_enrichment_status(track.id, provider)
                    await self.store.set_enrichment_status(
                        track.id,
                        provider,
                        EnrichmentStatus(
                            state=MatchState.RUNNING,
                            checked_at=previous.checked_at,
                            message="lookup queued",
                            query=previous.query,
                        ),
                    )
        except Exception:
            self.jobs.fail(job.id, "could not record lookup state")
            self._release(task)
            raise
        self._queues[provider].put_nowait(task)
        logger.debug("Queued %s lookup for %s (job %s)", provider.value, track.id, job.id)
        return job

    def _release(self, task: LookupTask) -> None:
        if task.settled:
            return
        task.settled = True
        if self._inflight.get(task.key) is task:
            del self._inflight[task.key]
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    def _is_current(self, task: LookupTask) -> bool:
        return self.pairs.is_current(task.track_id, task.provider, task.generation)

    def _supersede(self, task: LookupTask) -> None:
        self.jobs.update(task.job_id, state=JobState.COMPLETED, message="superseded")
        self._release(task)

    async def _worker(self, provider: Provider) -> None:
        queue = self._queues[provider]
        while True:
            task: LookupTask = await queue.get()
            try:
                await self._run(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected failure in %s lookup for %s", provider.value, task.track_id)
                await self._abandon(task, exc)
            finally:
                queue.task_done()

    async def _run(self, task: LookupTask) -> None:
        if not self._is_current(task):
            self._supersede(task)
            return
        track = self.store.get_track(task.track_id)
        if track is None:
            self.jobs.fail(task.job_id, "track not found")
            self._release(task)
            return
        client = self.clients[task.provider]
        query = client.build_query(track)
        if query.empty:
            await self._settle_failure(task, None, "missing_query", "missing title or artist")
            return
        if task.provider in self._disabled:
            await self._settle_failure(
                task, query.text, UnauthorizedError.code, client.missing_credentials_message
            )
            return

        self.jobs.update(task.job_id, state=JobState.RUNNING, attempts=task.attempt, message=None)
        try:
            candidates = await asyncio.wait_for(client.search(query), timeout=self.settings.lookup_timeout_seconds)
        except asyncio.TimeoutError:
            timeout_error = NetworkError(
                f"{task.provider.display_name} lookup timed out after {self.settings.lookup_timeout_seconds:g}s"
            )
            await self._retry_later(task, query, timeout_error)
            return
        except TRANSIENT_ERRORS as exc:
            await self._retry_later(task, query, exc)
            return
        except UnauthorizedError as exc:
            logger.warning("Disabling %s lookups: %s", task.provider.display_name, exc)
            self._disabled.add(task.provider)
            await self._settle_failure(task, query.text, exc.code, client.missing_credentials_message)
            return
        except MalformedResponseError as exc:
            logger.warning("Treating malformed %s response as empty: %s", task.provider.value, exc)
            candidates = []
        except CatalogError as exc:
            await self._settle_failure(task, query.text, exc.code, str(exc))
            return

        status = await self.resolver.apply_search_result(
            task.track_id, task.provider, task.generation, query, candidates
        )
        if status is None:
            self._supersede(task)
            return
        if status.state is MatchState.ERROR:
            self.jobs.fail(task.job_id, status.message or "lookup failed")
        else:
            self.jobs.finish(task.job_id, message=status.state.value)
        self._release(task)

    async def _settle_failure(self, task: LookupTask, query: Optional[str], code: str, message: str) -> None:
        status = await self.resolver.apply_failure(
            task.track_id, task.provider, task.generation, query=query, code=code, message=message
        )
        if status is None:
            self._supersede(task)
            return
        self.jobs.fail(task.job_id, message)
        self._release(task)

    async def _abandon(self, task: LookupTask, exc: Exception) -> None:
        try:
            await self._settle_failure(task, None, CatalogError.code, f"unexpected failure: {exc}")
        except Exception:
            logger.exception("Could not record failed %s lookup for %s", task.provider.value, task.track_id)
            self.jobs.fail(task.job_id, "unexpected failure")
            self._release(task)

    async def _retry_later(self, task: LookupTask, query: SearchQuery, exc: CatalogError) -> None:
        if task.attempt >= self.settings.max_attempts:
            logger.warning(
                "Giving up on %s lookup for %s after %d attempts: %s",
                task.provider.value,
                task.track_id,
                task.attempt,
                exc,
            )
            await self._settle_failure(task, query.text, exc.code, str(exc))
            return
        delay = self.settings.backoff(task.attempt, getattr(exc, "retry_after", None))
        task.attempt += 1
        self.jobs.update(
            task.job_id,
            state=JobState.QUEUED,
            attempts=task.attempt,
            message=f"retrying in {delay:g}s: {exc}",
        )
        logger.info("Retrying %s lookup for %s in %gs: %s", task.provider.value, task.track_id, delay, exc)
        handle = asyncio.create_task(self._requeue_after(task, delay))
        self._delayed.add(handle)
        handle.add_done_callback(self._delayed.discard)

    async def _requeue_after(self, task: LookupTask, delay: float) -> None:
        await self._sleep(delay)
        if not self._is_current(task):
            self._supersede(task)
            return
        self._queues[task.provider].put_nowait(task)
