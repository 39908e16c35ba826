import pytest
from elasticsearch import NotFoundError

from core.errors import PersistenceError
from core.store import Store
from elk import adapter as elk_adapter
from elk.adapter import ElasticsearchAdapter
from notify.discord import Notifier
from pipeline.context import RunContext
from pipeline.orchestrator import Orchestrator


class FakeClient:
    """Returns at most ``size`` hits per search, like a real cluster."""

    def __init__(self, docs=None):
        self.docs = docs if docs is not None else [{"id": "a"}]
        self.searches = []
        self.updates = []

    def options(self, **kwargs):
        return self

    def search(self, index, size, query, sort=None):
        self.searches.append({"index": index, "size": size, "query": query, "sort": sort})
        docs = list(self.docs)
        if sort:
            ((field, _),) = sort[0].items()
            docs.sort(key=lambda d: d.get(field, ""), reverse=True)
        return {"hits": {"hits": [{"_source": d} for d in docs[:size]]}}

    def update(self, index, id, doc, refresh):
        if id == "missing":
            raise NotFoundError("not found", meta=None, body={})
        self.updates.append((index, id, doc))

    def ping(self):
        return True

    def close(self):
        pass


def _scan_all(scans):
    def fake_scan(client, index, query, size):
        scans.append({"index": index, "query": query, "size": size})
        for doc in client.docs:
            yield {"_source": doc}

    return fake_scan


def _jobs(n):
    return [{"id": f"j{i}", "workflow": "recon", "started_at": f"2026-01-01T00:{i // 60:02d}:{i % 60:02d}+00:00"} for i in range(n)]


@pytest.fixture
def es(settings):
    return ElasticsearchAdapter(settings, client=FakeClient())


def test_create_conflicts_count_as_duplicates(es, monkeypatch):
    def fake_bulk(client, actions, **kwargs):
        assert all(a["_op_type"] == "create" for a in actions)
        return 1, [{"create": {"_id": "b", "status": 409, "error": {"type": "version_conflict_engine_exception"}}}]

    monkeypatch.setattr(elk_adapter.helpers, "bulk", fake_bulk)
    inserted = es.insert_if_absent("findings", [{"id": "a"}, {"id": "b"}])
    assert inserted == [{"id": "a"}]


def test_other_bulk_errors_raise(es, monkeypatch):
    def fake_bulk(client, actions, **kwargs):
        return 0, [{"create": {"_id": "a", "status": 400, "error": {"type": "mapper_parsing_exception"}}}]

    monkeypatch.setattr(elk_adapter.helpers, "bulk", fake_bulk)
    with pytest.raises(PersistenceError):
        es.insert_if_absent("findings", [{"id": "a"}])


def test_find_builds_term_filters(es):
    assert es.find("host_records", {"target_id": "t1", "is_alive": True}, 10) == [{"id": "a"}]
    search = es.client.searches[0]
    assert search["index"] == "bounty-host_records"
    assert search["size"] == 10
    assert search["sort"] is None
    assert search["query"] == {"bool": {"filter": [{"term": {"target_id.keyword": "t1"}}, {"term": {"is_alive": True}}]}}


def test_unlimited_find_scrolls_past_one_page(settings, monkeypatch):
    scans = []
    monkeypatch.setattr(elk_adapter.helpers, "scan", _scan_all(scans))
    es = ElasticsearchAdapter(settings, client=FakeClient([{"id": f"h{i}"} for i in range(1500)]))

    docs = es.find("host_records", {"is_alive": True})
    assert len(docs) == 1500
    assert es.client.searches == []
    assert scans[0]["index"] == "bounty-host_records"
    assert scans[0]["query"] == {"query": {"bool": {"filter": [{"term": {"is_alive": True}}]}}}


def test_limited_find_sorts_on_the_cluster(settings):
    es = ElasticsearchAdapter(settings, client=FakeClient(_jobs(1500)))
    (newest,) = es.find("job_runs", {"workflow": "recon"}, 1, sort="started_at")
    assert newest["id"] == "j1499"
    assert es.client.searches[0]["sort"] == [{"started_at": {"order": "desc", "unmapped_type": "date"}}]


def test_unlimited_sorted_find_orders_every_doc(settings, monkeypatch):
    monkeypatch.setattr(elk_adapter.helpers, "scan", _scan_all([]))
    es = ElasticsearchAdapter(settings, client=FakeClient(_jobs(1200)))
    docs = es.find("job_runs", sort="started_at")
    assert [d["id"] for d in docs[:2]] == ["j1199", "j1198"]
    assert len(docs) == 1200


@pytest.mark.asyncio
async def test_list_jobs_returns_newest_beyond_one_page(settings, fake_tools):
    es = ElasticsearchAdapter(settings, client=FakeClient(_jobs(1500)))
    ctx = RunContext(settings=settings, store=Store(es), tools=fake_tools, notifier=Notifier(settings))
    jobs = await Orchestrator(ctx).list_jobs(limit=1)
    assert [j["id"] for j in jobs] == ["j1499"]


def test_update_missing_returns_false(es):
    assert es.update_by_id("targets", "t1", {"status": "retired"}) is True
    assert es.update_by_id("targets", "missing", {"status": "retired"}) is False
