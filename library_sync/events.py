from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from library_sync.models import Provider, utcnow_iso

logger = logging.getLogger(__name__)

JOB_PROGRESS_EVENT = "app://jobs/progress"
TRACK_UPDATED_EVENT = "app://library/track-updated"
PLAYLIST_UPDATED_EVENT = "app://library/playlist-updated"
LIKES_REFRESH_EVENT = "app://library/likes/refresh"


def ambiguity_event(provider: Provider) -> str:
    return f"app://{provider.value}/lookup-ambiguous"


@dataclass
class Event:
    seq: int
    name: str
    payload: Dict[str, Any]
    emitted_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "event": self.name,
            "payload": self.payload,
            "emittedAt": self.emitted_at,
        }


class EventNotifier:
    """Fan-out of engine events to UI subscribers.

    Every published event gets a monotonically increasing sequence number and
    is kept in a bounded history so polling clients can ask for everything
    after the last sequence they saw. Streaming subscribers get their own
    queue.
    """

    def __init__(self, history_size: int = 500, subscriber_queue_size: int = 1000) -> None:
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._subscribers: Dict[int, asyncio.Queue] = {}
        self._subscriber_ids = itertools.count(1)
        self._seq = itertools.count(1)
        self._subscriber_queue_size = subscriber_queue_size

    def publish(self, name: str, payload: Dict[str, Any]) -> Event:
        event = Event(seq=next(self._seq), name=name, payload=payload)
        self._history.append(event)
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping event %s for slow subscriber %s", event.seq, subscriber_id)
        logger.debug("Published %s #%s", name, event.seq)
        return event

    def since(self, seq: int = 0, limit: Optional[int] = None) -> List[Event]:
        events = [event for event in self._history if event.seq > seq]
        if limit is not None:
            events = events[:limit]
        return events

    @property
    def last_seq(self) -> int:
        return self._history[-1].seq if self._history else 0

    async def subscribe(self) -> AsyncIterator[Event]:
        subscriber_id = next(self._subscriber_ids)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers[subscriber_id] = queue
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.pop(subscriber_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
