from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from library_sync.catalogs.base import CatalogClient, MalformedResponseError
from library_sync.events import EventNotifier, ambiguity_event
from library_sync.library import LibraryStore
from library_sync.models import Candidate, EnrichmentStatus, MatchState, Provider, SearchQuery, utcnow_iso
from library_sync.pairs import PairRegistry

logger = logging.getLogger(__name__)

NO_CANDIDATES_MESSAGE = "no candidates found"


@dataclass
class AutoAcceptPolicy:
    """A result is unambiguous when the best score reaches ``threshold``
    and no runner-up comes within ``margin`` of it."""

    threshold: float = 85.0
    margin: float = 10.0

    def accepts(self, candidates: Sequence[Candidate]) -> bool:
        if not candidates:
            return False
        top = candidates[0].score
        if top < self.threshold:
            return False
        if len(candidates) == 1:
            return True
        return top - candidates[1].score >= self.margin


class CandidateCache:
    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, Provider], List[Candidate]] = {}

    def get(self, track_id: str, provider: Provider) -> List[Candidate]:
        return list(self._entries.get((track_id, provider), []))

    def set(self, track_id: str, provider: Provider, candidates: List[Candidate]) -> None:
        self._entries[(track_id, provider)] = list(candidates)

    def clear(self, track_id: str, provider: Provider) -> None:
        self._entries.pop((track_id, provider), None)


class CandidateResolver:
    """Decides between auto-match and manual review, and applies user choices."""

    def __init__(
        self,
        store: LibraryStore,
        clients: Mapping[Provider, CatalogClient],
        pairs: PairRegistry,
        notifier: EventNotifier,
        policy: Optional[AutoAcceptPolicy] = None,
    ) -> None:
        self.store = store
        self.clients = clients
        self.pairs = pairs
        self.notifier = notifier
        self.policy = policy or AutoAcceptPolicy()
        self.cache = CandidateCache()

    @staticmethod
    def _stamp(track_id: str, candidates: List[Candidate]) -> List[Candidate]:
        for candidate in candidates:
            candidate.match_id = track_id
        return candidates

    async def list_candidates(self, track_id: str, provider: Provider) -> List[Candidate]:
        track = self.store.require_track(track_id)
        cached = self.cache.get(track_id, provider)
        if cached:
            return cached
        client = self.clients[provider]
        query = client.build_query(track)
        if query.empty:
            return []
        generation = self.pairs.generation(track_id, provider)
        try:
            candidates = await client.search(query)
        except MalformedResponseError as exc:
            logger.warning("Discarding malformed %s response for %s: %s", provider.value, track_id, exc)
            return []
        candidates = self._stamp(track_id, candidates)
        async with self.pairs.lock(track_id, provider):
            # A confirm or ignore that landed during the search owns the pair now.
            if candidates and self.pairs.is_current(track_id, provider, generation):
                self.cache.set(track_id, provider, candidates)
        return list(candidates)

    async def confirm(
        self,
        track_id: str,
        provider: Provider,
        release_id: str,
        raw_payload: Optional[Dict[str, Any]] = None,
        score: Optional[float] = None,
        query: Optional[str] = None,
    ) -> EnrichmentStatus:
        self.store.require_track(track_id)
        if score is None and raw_payload and raw_payload.get("score") is not None:
            try:
                score = float(raw_payload["score"])
            except (TypeError, ValueError):
                score = None
        async with self.pairs.lock(track_id, provider):
            self.pairs.bump(track_id, provider)
            previous = self.store.get_enrichment_status(track_id, provider)
            status = EnrichmentStatus(
                state=MatchState.SUCCESS,
                release_id=str(release_id),
                confidence=score if score is not None else 100.0,
                checked_at=utcnow_iso(),
                message="confirmed by user",
                query=query if query is not None else previous.query,
                confirmed=True,
                payload=raw_payload,
            )
            await self.store.set_enrichment_status(track_id, provider, status)
            self.cache.clear(track_id, provider)
        logger.info("Confirmed %s release %s for %s", provider.value, release_id, track_id)
        return status

    async def ignore(self, track_id: str, provider: Optional[Provider] = None) -> Dict[Provider, EnrichmentStatus]:
        self.store.require_track(track_id)
        providers = [provider] if provider is not None else list(Provider)
        result: Dict[Provider, EnrichmentStatus] = {}
        for item in providers:
            async with self.pairs.lock(track_id, item):
                self.pairs.bump(track_id, item)
                previous = self.store.get_enrichment_status(track_id, item)
                status = EnrichmentStatus(
                    state=MatchState.IGNORED,
                    checked_at=utcnow_iso(),
                    message="ignored by user",
                    query=previous.query,
                )
                await self.store.set_enrichment_status(track_id, item, status)
                self.cache.clear(track_id, item)
                result[item] = status
        logger.info("Ignored %s for %s", ", ".join(item.value for item in providers), track_id)
        return result

    def decide(self, query: SearchQuery, candidates: List[Candidate]) -> EnrichmentStatus:
        now = utcnow_iso()
        if not candidates:
            return EnrichmentStatus(
                state=MatchState.ERROR,
                checked_at=now,
                message=NO_CANDIDATES_MESSAGE,
                query=query.text,
                error_code="no_candidates",
            )
        top = candidates[0]
        if self.policy.accepts(candidates):
            return EnrichmentStatus(
                state=MatchState.SUCCESS,
                release_id=top.release_id,
                confidence=top.score,
                checked_at=now,
                message="matched automatically",
                query=query.text,
                payload=top.raw_payload,
            )
        return EnrichmentStatus(
            state=MatchState.AMBIGUOUS,
            confidence=top.score,
            checked_at=now,
            message=f"{len(candidates)} candidates need review",
            query=query.text,
        )

    async def apply_search_result(
        self,
        track_id: str,
        provider: Provider,
        generation: int,
        query: SearchQuery,
        candidates: List[Candidate],
    ) -> Optional[EnrichmentStatus]:
        """Commit a lookup outcome; returns None when the result is stale."""
        candidates = self._stamp(track_id, list(candidates))
        async with self.pairs.lock(track_id, provider):
            if not self.pairs.is_current(track_id, provider, generation):
                logger.warning("Discarding stale %s result for %s", provider.value, track_id)
                return None
            status = self.decide(query, candidates)
            await self.store.set_enrichment_status(track_id, provider, status)
            if status.state is MatchState.AMBIGUOUS:
                self.cache.set(track_id, provider, candidates)
                self.notifier.publish(
                    ambiguity_event(provider),
                    {
                        "trackId": track_id,
                        "provider": provider.value,
                        "query": query.text,
                        "candidates": [candidate.to_dict() for candidate in candidates],
                    },
                )
            else:
                self.cache.clear(track_id, provider)
        logger.info("%s lookup for %s settled as %s", provider.display_name, track_id, status.state.value)
        return status

    async def apply_failure(
        self,
        track_id: str,
        provider: Provider,
        generation: int,
        *,
        query: Optional[str],
        code: str,
        message: str,
    ) -> Optional[EnrichmentStatus]:
        async with self.pairs.lock(track_id, provider):
            if not self.pairs.is_current(track_id, provider, generation):
                logger.warning("Discarding stale %s failure for %s", provider.value, track_id)
                return None
            status = EnrichmentStatus(
                state=MatchState.ERROR,
                checked_at=utcnow_iso(),
                message=message,
                query=query,
                error_code=code,
            )
            await self.store.set_enrichment_status(track_id, provider, status)
            self.cache.clear(track_id, provider)
        return status
