import json

import pytest

from core.errors import PersistenceError
from core.models import HostRecord, SourceEntry, TechInfo
from pipeline import cve_correlator, stages
from pipeline.orchestrator import Orchestrator

FEED = {
    "CVE_Items": [
        {
            "cve": {"CVE_data_meta": {"ID": "CVE-2024-0001"}},
            "configurations": {
                "nodes": [{"cpe_match": [{"vulnerable": True, "cpe23Uri": "cpe:2.3:a:openbsd:openssh:9.0:*:*:*:*:*:*:*"}]}]
            },
            "impact": {"baseMetricV3": {"cvssV3": {"baseScore": 9.8, "vectorString": "CVSS:3.1/AV:N"}}},
        }
    ]
}


def _httpx_lines(spec, target):
    return [
        json.dumps({"input": h, "host": h, "port": 443, "scheme": "https", "status_code": 200, "tech": ["OpenSSH"]})
        for h in spec.stdin_lines
    ]


def _nuclei_line(name, severity="high", **info):
    return json.dumps({"template-id": name.lower().replace(" ", "-"), "info": {"name": name, "severity": severity, **info}})


def _host(host="api.example.com", target_id="t1"):
    return HostRecord(
        id=f"{target_id}-{host}",
        target_id=target_id,
        host=host,
        tech=[TechInfo(name="OpenSSH")],
        sources=[SourceEntry(tool="recon-normalize", run_id="job0")],
        is_alive=True,
    )


@pytest.mark.asyncio
async def test_recon_target_persists_hosts(ctx, target):
    ctx.tools.outputs = {
        "subfinder": ['{"host": "api.example.com", "source": "crtsh"}', "not json"],
        "httpx": _httpx_lines,
    }
    await ctx.store.insert_many("targets", [target.to_doc()])

    inserted = await stages.recon_target(ctx, target, "job1")
    assert inserted == 2
    hosts = await ctx.store.find("host_records", {"target_id": target.id})
    assert sorted(h["host"] for h in hosts) == ["api.example.com", "example.com"]
    assert all(h["is_alive"] for h in hosts)
    assert [c[0] for c in ctx.tools.calls] == ["subfinder", "httpx"]

    again = await stages.recon_target(ctx, target, "job1")
    assert again == 0


@pytest.mark.asyncio
async def test_recon_skips_ineligible_program(ctx, target):
    other = target.model_copy(update={"program": "private:acme"})
    assert await stages.recon_target(ctx, other, "job1") == 0
    assert ctx.tools.calls == []


@pytest.mark.asyncio
async def test_attack_host_runs_every_profile_and_dedupes(ctx):
    ctx.tools.outputs = {"nuclei-xss": [_nuclei_line("Reflected XSS", "low")]}
    notified = []
    ctx.notifier.notify_finding = lambda finding, host=None: notified.append(finding.title)

    host = _host()
    assert await stages.attack_host(ctx, host, "job1") == 1
    assert len(ctx.tools.calls) == 6
    assert all(c[1] == "http://api.example.com" for c in ctx.tools.calls)

    (finding,) = await ctx.store.find("findings")
    assert finding["source"] == "nuclei-xss"
    assert finding["severity"] == "high"
    assert notified == ["Reflected XSS"]

    assert await stages.attack_host(ctx, host, "job2") == 0
    assert notified == ["Reflected XSS"]


@pytest.mark.asyncio
async def test_vuln_scan_merges_scanner_and_suggestions(ctx):
    ctx.tools.outputs = {
        "nuclei": [
            _nuclei_line("OpenSSH agent RCE", "critical", cve="CVE-2024-0001")
        ]
    }
    index = cve_correlator.build_index(FEED)
    count = await stages.vuln_scan_host(ctx, _host(), "job1", index)
    assert count == 2

    findings = {f["source"]: f for f in await ctx.store.find("findings")}
    assert findings["nuclei"]["confidence"] == "confirmed"
    assert findings["nuclei"]["cves"][0]["cvss"]["base_score"] == 9.8
    assert findings["cve-suggest"]["confidence"] == "needs-review"


@pytest.mark.asyncio
async def test_orchestrated_recon_records_job(ctx, target):
    ctx.tools.outputs = {"httpx": _httpx_lines}
    orch = Orchestrator(ctx)
    await orch.add_target(target.program, target.asset.value, "domain", "hackerone")

    job = await orch.run_recon()
    assert job.status == "success"
    assert job.stats["items"] == 1
    assert job.stats["inserted"] == 1
    (doc,) = await orch.list_jobs(workflow="recon")
    assert doc["status"] == "success"


@pytest.mark.asyncio
async def test_persistence_failure_fails_the_job(ctx, target, monkeypatch):
    ctx.tools.outputs = {"httpx": _httpx_lines}
    orch = Orchestrator(ctx)
    await orch.add_target(target.program, target.asset.value)

    async def broken(collection, docs):
        raise PersistenceError("bulk rejected")

    monkeypatch.setattr(ctx.store, "insert_if_absent", broken)
    with pytest.raises(PersistenceError):
        await orch.run_recon()
    (doc,) = await orch.list_jobs(workflow="recon")
    assert doc["status"] == "failed"
    assert doc["error"]["message"] == "bulk rejected"


@pytest.mark.asyncio
async def test_attack_stage_only_uses_alive_hosts_of_eligible_targets(ctx, target):
    orch = Orchestrator(ctx)
    await orch.add_target(target.program, target.asset.value)
    alive = _host(target_id=target.id)
    dead = _host("dead.example.com", target.id).model_copy(update={"is_alive": False})
    foreign = _host("other.test", "someone-else")
    await ctx.store.insert_many("host_records", [alive.to_doc(), dead.to_doc(), foreign.to_doc()])

    job = await orch.run_attack()
    assert job.stats["items"] == 1
    assert {c[1] for c in ctx.tools.calls} == {"http://api.example.com"}


@pytest.mark.asyncio
async def test_nuclei_runs_are_paced_from_settings(ctx):
    ctx.settings = ctx.settings.model_copy(update={"nuclei_rate_limit": 25, "nuclei_timeout_s": 30})
    await stages.attack_host(ctx, _host(), "job1")
    await stages.vuln_scan_host(ctx, _host(), "job1")
    assert len(ctx.tools.calls) == 7
    for _, _, args in ctx.tools.calls:
        assert args[args.index("-rate-limit") + 1] == "25"
        assert args[args.index("-timeout") + 1] == "30"
        assert args[args.index("-bulk-size") + 1] == "50"
        assert args[args.index("-retries") + 1] == "2"
