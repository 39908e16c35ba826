"""
Single-node orchestrator: loads a stage's work list from the store, drives it
through the bounded scheduler and records the JobRun around it.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.authz_scope import is_authorized_target
from core.errors import PersistenceError
from core.jobs import finish_job, start_job
from core.models import HostRecord, JobRun, Target
from core.scheduler import run_batch
from pipeline import cve_correlator, stages
from pipeline.context import RunContext

log = logging.getLogger(__name__)

TOOLS = ("subfinder", "amass", "httpx", "nuclei", "nmap")


class Orchestrator:
    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx
        self.settings = ctx.settings
        self.store = ctx.store

    async def _run_stage(
        self,
        workflow: str,
        load: Callable[[], Awaitable[List[Any]]],
        operation: Callable[[Any, str], Awaitable[int]],
        concurrency: int,
        stagger_ms: int,
        trigger: str,
    ) -> JobRun:
        job = await start_job(self.store, workflow, trigger)
        items: List[Any] = []

        def progress(done: int, total: int, inserted: Any) -> None:
            log.info("[%s] progress %s/%s completed (%s inserted)", workflow, done, total, inserted)

        try:
            items = await load()
            log.info("[%s] %s items, concurrency=%s", workflow, len(items), concurrency)
            outcome = await run_batch(
                items,
                lambda item: operation(item, job.id),
                concurrency,
                stagger_ms,
                fatal=(PersistenceError,),
                on_progress=progress,
            )
        except Exception as exc:
            log.exception("[%s] job %s failed", workflow, job.id)
            job = await finish_job(self.store, job, "failed", stats={"items": len(items)}, error=exc)
            self.ctx.notifier.notify_job(job)
            raise

        stats = {
            "items": len(items),
            "completed": outcome.completed,
            "failed": outcome.failed,
            "inserted": outcome.aggregate,
        }
        job = await finish_job(self.store, job, "success", stats=stats)
        self.ctx.notifier.notify_job(job)
        return job

    async def _eligible_targets(self, limit: int) -> List[Target]:
        docs = await self.store.find("targets", {"status": "active"}, limit)
        targets = [Target.model_validate(d) for d in docs]
        prefixes = self.settings.allowed_program_prefixes
        return [t for t in targets if is_authorized_target(t, prefixes)]

    async def _eligible_hosts(self, limit: int) -> List[HostRecord]:
        eligible = {t.id for t in await self._eligible_targets(limit=0)}
        docs = await self.store.find("host_records", {"is_alive": True})
        latest: Dict[str, HostRecord] = {}
        for doc in docs:
            record = HostRecord.model_validate(doc)
            if record.target_id not in eligible:
                continue
            seen = latest.get(record.host)
            if seen is None or record.last_checked > seen.last_checked:
                latest[record.host] = record
        return list(latest.values())[:limit]

    async def run_recon(self, trigger: str = "manual", limit: Optional[int] = None) -> JobRun:
        s = self.settings
        return await self._run_stage(
            "recon",
            lambda: self._eligible_targets(limit or s.recon_batch_limit),
            lambda target, job_id: stages.recon_target(self.ctx, target, job_id),
            s.recon_concurrency,
            s.recon_stagger_ms,
            trigger,
        )

    async def run_attack(self, trigger: str = "manual", limit: Optional[int] = None) -> JobRun:
        s = self.settings
        index = cve_correlator.load_index(s.nvd_feed_path)
        return await self._run_stage(
            "attack",
            lambda: self._eligible_hosts(limit or s.attack_batch_limit),
            lambda host, job_id: stages.attack_host(self.ctx, host, job_id, index),
            s.attack_concurrency,
            s.attack_stagger_ms,
            trigger,
        )

    async def run_vuln(self, trigger: str = "manual", limit: Optional[int] = None) -> JobRun:
        s = self.settings
        index = cve_correlator.load_index(s.nvd_feed_path)
        return await self._run_stage(
            "vuln",
            lambda: self._eligible_hosts(limit or s.vuln_batch_limit),
            lambda host, job_id: stages.vuln_scan_host(self.ctx, host, job_id, index),
            s.vuln_concurrency,
            s.vuln_stagger_ms,
            trigger,
        )

    async def add_target(
        self,
        program: str,
        value: str,
        asset_type: str = "domain",
        source: str = "manual",
        notes: Optional[str] = None,
    ) -> Tuple[Target, bool]:
        target = Target.create(program, asset_type, value, source)
        if notes:
            target = target.model_copy(update={"notes": notes})
        inserted = await self.store.insert_if_absent("targets", [target.to_doc()])
        if not inserted:
            existing = await self.store.find("targets", {"id": target.id}, 1)
            if existing:
                return Target.model_validate(existing[0]), False
        if not is_authorized_target(target, self.settings.allowed_program_prefixes):
            log.warning("target %s added but program %s is not eligible for scanning", value, program)
        return target, bool(inserted)

    async def list_hosts(self, target_id: Optional[str] = None, alive: Optional[bool] = None, limit: int = 50) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if target_id:
            filters["target_id"] = target_id
        if alive is not None:
            filters["is_alive"] = alive
        return await self.store.find("host_records", filters, limit)

    async def list_findings(
        self, host_id: Optional[str] = None, severity: Optional[str] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if host_id:
            filters["host_id"] = host_id
        if severity:
            filters["severity"] = severity.lower()
        return await self.store.find("findings", filters, limit)

    async def list_jobs(self, workflow: Optional[str] = None, status: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if workflow:
            filters["workflow"] = workflow
        if status:
            filters["status"] = status
        return await self.store.find("job_runs", filters, limit, sort="started_at")

    async def verify(self) -> Dict[str, Any]:
        s = self.settings
        tools = {}
        for tool in TOOLS:
            path = Path(s.tool_bin_dir) / tool if s.tool_bin_dir else None
            tools[tool] = bool((path and path.exists()) or shutil.which(tool))
        return {
            "program_prefixes": bool(s.allowed_program_prefixes),
            "store": await self.store.ping(),
            "elasticsearch": bool(s.elasticsearch_url),
            "nvd_feed": bool(s.nvd_feed_path and Path(s.nvd_feed_path).exists()),
            "notifications": self.ctx.notifier.enabled,
            "tools": tools,
        }
