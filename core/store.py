"""
Async facade over a document backend (StateManager or ElasticsearchAdapter).

Backends are synchronous. The Elasticsearch client does network I/O, so its
calls are offloaded to a worker thread; the in-memory backend runs inline on
the event loop, which keeps its conditional insert atomic. Any backend
failure surfaces as PersistenceError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from core.errors import PersistenceError

log = logging.getLogger(__name__)


class Store:
    def __init__(self, backend: Any, offload: bool = False):
        self.backend = backend
        self.offload = offload

    async def _call(self, method: str, *args: Any) -> Any:
        fn = getattr(self.backend, method)
        try:
            if self.offload:
                return await asyncio.to_thread(fn, *args)
            return fn(*args)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            log.error("store %s failed: %s", method, exc)
            raise PersistenceError(f"{method} failed: {exc}") from exc

    async def insert_many(self, collection: str, docs: Iterable[Dict[str, Any]]) -> int:
        return await self._call("insert_many", collection, list(docs))

    async def insert_if_absent(self, collection: str, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        doc_list = list(docs)
        if not doc_list:
            return []
        return await self._call("insert_if_absent", collection, doc_list)

    async def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return await self._call("find", collection, filters or {}, limit, sort)

    async def update_by_id(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        return await self._call("update_by_id", collection, doc_id, fields)

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping"))
        except PersistenceError:
            return False

    async def close(self) -> None:
        await self._call("close")
