"""
Per-item stage runners driven by the orchestrator's batch scheduler:
recon:  subfinder (+amass) -> httpx -> normalize -> host_records
attack: six nuclei attack profiles per alive host -> findings
vuln:   nuclei vulnerability templates (+nmap vulners) + CVE suggestions -> findings

Every runner returns the number of newly inserted documents. Tool failures
degrade to empty output; store failures propagate.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from core.authz_scope import is_authorized_target
from core.models import Finding, HostRecord, Target, utcnow
from pipeline import cve_correlator
from pipeline.attack_profiles import ATTACK_PROFILES, run_attack_profile
from pipeline.finding_normalize import merge_findings, parse_nmap, parse_nuclei
from pipeline.recon_normalize import normalize_recon
from tools import commands
from tools.nmap_xml import parse_nmap_xml

log = logging.getLogger(__name__)

VULN_TEMPLATE_DIRS = ("cves/", "vulnerabilities/")
VULN_SEVERITIES = ("critical", "high", "medium", "low")


async def _discover(ctx, domain: str, job_id: str) -> Dict[str, Any]:
    runs = [ctx.tools.run(commands.subfinder(domain), domain, job_id)]
    if ctx.settings.enable_amass:
        runs.append(ctx.tools.run(commands.amass(domain), domain, job_id))
    outputs = await asyncio.gather(*runs)

    sources: Dict[str, Any] = {"subfinder": outputs[0].records()}
    if len(outputs) > 1:
        sources["amass"] = {"nodes": outputs[1].records()}
    return sources


async def recon_target(ctx, target: Target, job_id: str) -> int:
    if not is_authorized_target(target, ctx.settings.allowed_program_prefixes):
        return 0
    value = target.asset.value
    log.info("recon %s (%s)", value, target.program)

    sources: Dict[str, Any] = {}
    if target.asset.type == "domain":
        sources = await _discover(ctx, value, job_id)
    hosts = [r.host for r in normalize_recon(sources, target.id, job_id)]
    if value not in hosts:
        hosts.insert(0, value)

    probe = await ctx.tools.run(commands.httpx(hosts), value, job_id)
    sources["httpx"] = probe.records()

    records = normalize_recon(sources, target.id, job_id)
    inserted = await ctx.store.insert_if_absent("host_records", [r.to_doc() for r in records])
    now = utcnow().isoformat()
    await ctx.store.update_by_id("targets", target.id, {"last_seen": now, "updated_at": now})
    alive = sum(1 for r in records if r.is_alive)
    log.info("recon %s: %s hosts (%s alive), %s new", value, len(records), alive, len(inserted))
    return len(inserted)


async def persist_findings(ctx, findings: List[Finding], host: Optional[str] = None) -> int:
    """Insert unseen findings and notify for each one actually inserted."""
    if not findings:
        return 0
    by_id = {f.id: f for f in findings}
    inserted = await ctx.store.insert_if_absent("findings", [f.to_doc() for f in findings])
    for doc in inserted:
        ctx.notifier.notify_finding(by_id[doc["id"]], host)
    return len(inserted)


async def attack_host(ctx, host: HostRecord, job_id: str, cve_index: Optional[Dict] = None) -> int:
    url = f"http://{host.host}"
    results = await asyncio.gather(
        *(run_attack_profile(ctx, profile, url, host.id, job_id) for profile in ATTACK_PROFILES)
    )
    findings = merge_findings(*results)
    if cve_index:
        findings = cve_correlator.enrich(findings, cve_index)
    count = await persist_findings(ctx, findings, host.host)
    log.info("attack %s: %s findings, %s new", host.host, len(findings), count)
    return count


async def _nmap_findings(ctx, host: HostRecord, job_id: str) -> List[Finding]:
    output = await ctx.tools.run(commands.nmap(host.host), host.host, job_id)
    return parse_nmap(parse_nmap_xml("\n".join(output.lines)), host.id, job_id)


async def vuln_scan_host(ctx, host: HostRecord, job_id: str, cve_index: Optional[Dict] = None) -> int:
    cve_index = cve_index or {}
    url = f"http://{host.host}"
    root = ctx.settings.nuclei_templates_dir.rstrip("/") + "/"
    spec = commands.nuclei(
        url,
        [root + d for d in VULN_TEMPLATE_DIRS],
        severities=VULN_SEVERITIES,
        limits=commands.NucleiLimits.from_settings(ctx.settings),
    )

    runs = [ctx.tools.run(spec, url, job_id)]
    if ctx.settings.enable_nmap:
        runs.append(_nmap_findings(ctx, host, job_id))
    results = await asyncio.gather(*runs)

    nuclei_findings = parse_nuclei(results[0].records(), host.id, job_id)
    nmap_findings = results[1] if len(results) > 1 else []
    suggested = cve_correlator.suggestions_to_findings(
        cve_correlator.suggest(host.tech, cve_index), host.id, job_id
    )

    findings = cve_correlator.enrich(merge_findings(nuclei_findings, nmap_findings, suggested), cve_index)
    count = await persist_findings(ctx, findings, host.host)
    log.info("vuln %s: %s findings, %s new", host.host, len(findings), count)
    return count
