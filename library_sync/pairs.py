from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import DefaultDict, Dict, Tuple

from library_sync.models import Provider

PairKey = Tuple[str, Provider]


class PairRegistry:
    """Generation counters and locks keyed by (track id, provider).

    A lookup result is only committed when the generation captured at
    enqueue time still matches; user actions bump the generation so any
    result still in flight for the pair is discarded.
    """

    def __init__(self) -> None:
        self._generations: DefaultDict[PairKey, int] = defaultdict(int)
        self._locks: Dict[PairKey, asyncio.Lock] = {}

    def generation(self, track_id: str, provider: Provider) -> int:
        return self._generations[(track_id, provider)]

    def bump(self, track_id: str, provider: Provider) -> int:
        key = (track_id, provider)
        self._generations[key] += 1
        return self._generations[key]

    def is_current(self, track_id: str, provider: Provider, generation: int) -> bool:
        return self._generations[(track_id, provider)] == generation

    def lock(self, track_id: str, provider: Provider) -> asyncio.Lock:
        key = (track_id, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock
