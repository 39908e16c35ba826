"""
JobRun lifecycle: running -> success | failed, exactly once per run.
There is no resume state; a failed job is re-triggered as a new run.
"""

from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any, Dict, Optional

from core.models import JobError, JobRun, utcnow
from core.store import Store

log = logging.getLogger(__name__)


async def start_job(store: Store, workflow: str, trigger: str = "manual") -> JobRun:
    job = JobRun(id=str(uuid.uuid4()), workflow=workflow, trigger=trigger)
    await store.insert_many("job_runs", [job.to_doc()])
    log.info("job %s started (%s, trigger=%s)", job.id, workflow, trigger)
    return job


async def finish_job(
    store: Store,
    job: JobRun,
    status: str,
    stats: Optional[Dict[str, Any]] = None,
    error: Optional[BaseException] = None,
) -> JobRun:
    if job.status != "running":
        raise ValueError(f"job {job.id} already finished with status {job.status}")
    if status not in ("success", "failed"):
        raise ValueError(f"invalid terminal status {status}")

    now = utcnow()
    update: Dict[str, Any] = {
        "status": status,
        "finished_at": now,
        "updated_at": now,
        "duration_ms": max(0, int((now - job.started_at).total_seconds() * 1000)),
    }
    if stats is not None:
        update["stats"] = stats
    if error is not None:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        update["error"] = JobError(message=str(error) or type(error).__name__, stack=stack or None)

    finished = job.model_copy(update=update)
    fields = finished.model_dump(mode="json", include=set(update), exclude_none=True)
    await store.update_by_id("job_runs", job.id, fields)
    log.info("job %s finished: %s in %sms", job.id, status, finished.duration_ms)
    return finished
