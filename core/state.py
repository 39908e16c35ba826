"""
In-memory document store with optional JSON cache for single-node mode.
Keeps the four pipeline collections available for CLI reports and local
debugging without an Elasticsearch cluster.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

log = logging.getLogger(__name__)

COLLECTIONS = ("targets", "host_records", "findings", "job_runs")


def lookup(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches(doc: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(lookup(doc, key) == expected for key, expected in filters.items())


def newest_first(docs: List[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    # ISO-8601 strings order lexically; missing values sink to the end
    return sorted(docs, key=lambda d: str(lookup(d, field) or ""), reverse=True)


class StateManager:
    def __init__(self, cache_path: Optional[str] = None):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self.cache_path = Path(cache_path) if cache_path else None
        self._load_cache()

    def _load_cache(self):
        if self.cache_path and self.cache_path.exists():
            try:
                data = json.loads(self.cache_path.read_text())
                for name in COLLECTIONS:
                    self.collections[name] = {doc["id"]: doc for doc in data.get(name, [])}
            except Exception:  # noqa: BLE001
                log.warning("failed to load cache from %s", self.cache_path)

    def _persist(self):
        if not self.cache_path:
            return
        snapshot = {name: list(docs.values()) for name, docs in self.collections.items()}
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(snapshot, indent=2, default=str))
        except Exception:  # noqa: BLE001
            log.warning("failed to persist cache to %s", self.cache_path)

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        try:
            return self.collections[collection]
        except KeyError:
            raise KeyError(f"unknown collection {collection}") from None

    def insert_many(self, collection: str, docs: Iterable[Dict[str, Any]]) -> int:
        bucket = self._bucket(collection)
        count = 0
        for doc in docs:
            bucket[doc["id"]] = dict(doc)
            count += 1
        if count:
            self._persist()
        return count

    def insert_if_absent(self, collection: str, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Conditional insert keyed by document id. Check and insert happen in
        one synchronous pass, so no other coroutine can interleave.
        """
        bucket = self._bucket(collection)
        inserted: List[Dict[str, Any]] = []
        for doc in docs:
            if doc["id"] in bucket:
                continue
            bucket[doc["id"]] = dict(doc)
            inserted.append(doc)
        if inserted:
            self._persist()
        return inserted

    def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Matching docs; ``sort`` names a field to order by, newest first."""
        docs = [dict(d) for d in self._bucket(collection).values() if matches(d, filters)]
        if sort:
            docs = newest_first(docs, sort)
        return docs[:limit] if limit else docs

    def update_by_id(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        doc = self._bucket(collection).get(doc_id)
        if doc is None:
            return False
        doc.update(fields)
        self._persist()
        return True

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        self._persist()
