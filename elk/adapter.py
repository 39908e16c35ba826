"""
Elasticsearch backend for the four pipeline collections.
Uses the official client; bulk writes retry with backoff, conditional
inserts use ``create`` ops so a duplicate id is rejected by the cluster
instead of checked beforehand.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Iterable, List, Optional

from elasticsearch import Elasticsearch, NotFoundError, helpers

from core.config import Settings, settings as default_settings
from core.errors import PersistenceError
from core.state import newest_first

log = logging.getLogger(__name__)

SCROLL_PAGE_SIZE = 1000


class ElasticsearchAdapter:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[Elasticsearch] = None):
        settings = settings or default_settings
        if client is None and not settings.elasticsearch_url:
            raise ValueError("ELASTICSEARCH_URL is required for ElasticsearchAdapter")

        if client is None:
            client_args: Dict = {
                "hosts": [settings.elasticsearch_url],
                "verify_certs": settings.elasticsearch_verify_certs,
            }

            if settings.elasticsearch_api_key:
                client_args["api_key"] = settings.elasticsearch_api_key
            elif settings.elasticsearch_user and settings.elasticsearch_pass:
                client_args["basic_auth"] = (settings.elasticsearch_user, settings.elasticsearch_pass)

            if settings.elasticsearch_ca_cert:
                client_args["ca_certs"] = settings.elasticsearch_ca_cert

            client = Elasticsearch(**client_args)

        self.client = client
        self.prefix = settings.index_prefix
        self.batch_size = settings.bulk_batch_size
        self.max_attempts = 3
        self.backoff_base = 1.0

    def index_name(self, collection: str) -> str:
        return f"{self.prefix}{collection}"

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception:  # noqa: BLE001
            return False

    def _bulk(self, actions: List[Dict[str, Any]]):
        """Send one chunk, retrying transport failures. Returns per-item errors."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                _, errors = helpers.bulk(
                    self.client.options(request_timeout=30),
                    actions,
                    raise_on_error=False,
                    raise_on_exception=True,
                    max_retries=0,
                    refresh="wait_for",
                )
                return errors
            except Exception:  # noqa: BLE001
                if attempt >= self.max_attempts:
                    raise
                sleep_for = self.backoff_base * (2 ** (attempt - 1)) + random.random()
                log.warning("bulk write failed (attempt %s), retrying in %.1fs", attempt, sleep_for)
                time.sleep(sleep_for)
        return []

    def _write(self, collection: str, docs: List[Dict[str, Any]], op_type: str) -> List[Dict[str, Any]]:
        index = self.index_name(collection)
        written: List[Dict[str, Any]] = []

        def _chunks(seq: List[Dict], size: int):
            for i in range(0, len(seq), size):
                yield seq[i : i + size]

        for chunk in _chunks(docs, self.batch_size):
            actions = [{"_op_type": op_type, "_index": index, "_id": d["id"], "_source": d} for d in chunk]
            rejected = set()
            for err in self._bulk(actions):
                item = err.get(op_type, {})
                if item.get("status") == 409 and op_type == "create":
                    rejected.add(item.get("_id"))
                    continue
                raise PersistenceError(f"bulk {op_type} into {index} failed: {item.get('error')}")
            written.extend(d for d in chunk if d["id"] not in rejected)
        return written

    def insert_many(self, collection: str, docs: Iterable[Dict[str, Any]]) -> int:
        doc_list = list(docs)
        if not doc_list:
            return 0
        return len(self._write(collection, doc_list, "index"))

    def insert_if_absent(self, collection: str, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        doc_list = list(docs)
        if not doc_list:
            return []
        return self._write(collection, doc_list, "create")

    @staticmethod
    def _filter_query(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not filters:
            return {"match_all": {}}
        clauses = []
        for key, value in filters.items():
            field = f"{key}.keyword" if isinstance(value, str) else key
            clauses.append({"term": {field: value}})
        return {"bool": {"filter": clauses}}

    def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        ``limit`` of None or 0 scrolls the whole index with ``helpers.scan``
        instead of stopping at one search page. ``sort`` names a field to
        order by, newest first.
        """
        index = self.index_name(collection)
        query = self._filter_query(filters)
        try:
            if not limit:
                docs = [
                    h.get("_source", {})
                    for h in helpers.scan(self.client, index=index, query={"query": query}, size=SCROLL_PAGE_SIZE)
                ]
                return newest_first(docs, sort) if sort else docs
            kwargs: Dict[str, Any] = {}
            if sort:
                kwargs["sort"] = [{sort: {"order": "desc", "unmapped_type": "date"}}]
            res = self.client.search(index=index, size=limit, query=query, **kwargs)
        except NotFoundError:
            return []
        hits = res.get("hits", {}).get("hits", [])
        return [h.get("_source", {}) for h in hits]

    def update_by_id(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        try:
            self.client.update(index=self.index_name(collection), id=doc_id, doc=fields, refresh="wait_for")
        except NotFoundError:
            return False
        return True

    def close(self) -> None:
        self.client.close()
