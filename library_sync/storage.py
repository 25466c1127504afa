from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class JSONStorage:
    """JSON document store with an async lock and atomic file replacement."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("{}", encoding="utf-8")

    async def _read(self) -> Dict[str, Any]:
        def _load() -> Dict[str, Any]:
            try:
                return json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable state file %s", self.path)
                return {}

        return await asyncio.to_thread(_load)

    async def _write(self, payload: Dict[str, Any]) -> None:
        def _dump() -> None:
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, self.path)

        await asyncio.to_thread(_dump)

    async def get(self, key: str, default: Optional[Any] = None) -> Any:
        async with self._lock:
            data = await self._read()
            return data.get(key, default)

    async def set_many(self, values: Mapping[str, Any]) -> None:
        async with self._lock:
            data = await self._read()
            data.update(values)
            await self._write(data)
