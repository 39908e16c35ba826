"""
Fire-and-forget Discord webhook notifications routed by severity tier.

``emit`` schedules the POST on the running loop and returns immediately.
Delivery failures are logged and never reach the pipeline; ``drain`` waits
for outstanding posts before shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from core.models import Finding, JobRun

log = logging.getLogger(__name__)

SEVERITY_COLORS = {
    "critical": 0xFF0000,
    "high": 0xFF6600,
    "medium": 0xFFFF00,
    "low": 0x00FF00,
    "info": 0x0099FF,
}
JOB_COLORS = {"success": 0x00FF00, "failed": 0xFF0000}


def finding_payload(finding: Finding, host: Optional[str] = None) -> Dict[str, Any]:
    fields = [
        {"name": "Severity", "value": finding.severity.upper(), "inline": True},
        {"name": "Confidence", "value": finding.confidence, "inline": True},
        {"name": "Source", "value": finding.source, "inline": True},
    ]
    if host:
        fields.append({"name": "Host", "value": host, "inline": False})
    if finding.cves:
        fields.append({"name": "CVEs", "value": ", ".join(c.id for c in finding.cves[:10]), "inline": False})
    return {
        "embeds": [
            {
                "title": f"{finding.severity.upper()} finding: {finding.title}"[:256],
                "description": (finding.description or "No description available")[:2000],
                "color": SEVERITY_COLORS.get(finding.severity, 0x666666),
                "fields": fields,
                "timestamp": finding.created_at.isoformat(),
            }
        ]
    }


def job_payload(job: JobRun) -> Dict[str, Any]:
    stats = ", ".join(f"{k}={v}" for k, v in sorted(job.stats.items())) or "none"
    description = f"status: {job.status}\nduration: {job.duration_ms or 0}ms\nstats: {stats}"
    if job.error:
        description += f"\nerror: {job.error.message}"
    return {
        "embeds": [
            {
                "title": f"Job {job.workflow} {job.status}",
                "description": description[:2000],
                "color": JOB_COLORS.get(job.status, 0x666666),
                "footer": {"text": job.id},
            }
        ]
    }


class Notifier:
    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self.default_url = settings.discord_webhook_url
        self.tier_urls = dict(settings.discord_tier_webhooks)
        self.timeout = settings.notify_timeout_s
        self._client = client
        self._owns_client = client is None
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.default_url or self.tier_urls)

    def _url_for(self, tier: str) -> Optional[str]:
        return self.tier_urls.get(tier) or self.default_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, url: str, tier: str, payload: Dict[str, Any]) -> None:
        try:
            resp = await self._get_client().post(url, json=payload)
            resp.raise_for_status()
            log.debug("notification sent to %s channel", tier)
        except Exception as exc:  # noqa: BLE001
            log.error("discord notification to %s channel failed: %s", tier, exc)

    def emit(self, tier: str, payload: Dict[str, Any]) -> None:
        url = self._url_for(tier)
        if not url:
            log.debug("no webhook configured for %s, skipping notification", tier)
            return
        task = asyncio.get_running_loop().create_task(self._post(url, tier, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify_finding(self, finding: Finding, host: Optional[str] = None) -> None:
        self.emit(finding.severity, finding_payload(finding, host))

    def notify_job(self, job: JobRun) -> None:
        self.emit("reports", job_payload(job))

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
