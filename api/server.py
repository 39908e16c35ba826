"""
FastAPI proxy exposing pipeline actions without exposing Elasticsearch directly.
Reads ES credentials from .env (via core.config) and forwards to the orchestrator.
Stage endpoints run the whole batch before responding.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from core.config import Settings, get_settings
from pipeline.context import RunContext
from pipeline.orchestrator import Orchestrator

log = logging.getLogger(__name__)


class TargetPayload(BaseModel):
    program: str
    value: str
    type: Literal["domain", "hostname", "ip", "cidr", "url"] = "domain"
    source: Literal["bugcrowd", "hackerone", "intigriti", "manual", "other"] = "manual"
    notes: Optional[str] = None


class StagePayload(BaseModel):
    limit: Optional[int] = None
    trigger: Literal["cron", "manual", "webhook", "event"] = "webhook"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = RunContext.from_settings(settings or get_settings())
        app.state.orch = Orchestrator(ctx)
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="Bounty Pipeline API", version="1.0", lifespan=lifespan)

    def _orch(request: Request) -> Orchestrator:
        return request.app.state.orch

    @app.post("/api/targets")
    async def api_add_target(payload: TargetPayload, request: Request):
        try:
            target, created = await _orch(request).add_target(
                payload.program, payload.value, payload.type, payload.source, payload.notes
            )
            return {"created": created, "target": target.to_doc()}
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            log.exception("add target failed")
            raise HTTPException(status_code=500, detail="add target failed") from exc

    async def _stage(name: str, request: Request, payload: StagePayload):
        orch = _orch(request)
        runner = {"recon": orch.run_recon, "attack": orch.run_attack, "vuln": orch.run_vuln}[name]
        try:
            job = await runner(trigger=payload.trigger, limit=payload.limit)
            return job.to_doc()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            log.exception("%s failed", name)
            raise HTTPException(status_code=500, detail=f"{name} failed") from exc

    @app.post("/api/recon")
    async def api_recon(request: Request, payload: Optional[StagePayload] = None):
        return await _stage("recon", request, payload or StagePayload())

    @app.post("/api/attack")
    async def api_attack(request: Request, payload: Optional[StagePayload] = None):
        return await _stage("attack", request, payload or StagePayload())

    @app.post("/api/vuln")
    async def api_vuln(request: Request, payload: Optional[StagePayload] = None):
        return await _stage("vuln", request, payload or StagePayload())

    @app.get("/api/hosts")
    async def api_hosts(
        request: Request,
        target_id: Optional[str] = Query(None),
        alive: Optional[bool] = Query(None),
        size: int = Query(50, ge=1, le=500),
    ):
        try:
            return {"hosts": await _orch(request).list_hosts(target_id=target_id, alive=alive, limit=size)}
        except Exception as exc:  # noqa: BLE001
            log.exception("hosts query failed")
            raise HTTPException(status_code=500, detail="hosts query failed") from exc

    @app.get("/api/findings")
    async def api_findings(
        request: Request,
        host_id: Optional[str] = Query(None),
        severity: Optional[str] = Query(None),
        size: int = Query(50, ge=1, le=500),
    ):
        try:
            return {"findings": await _orch(request).list_findings(host_id=host_id, severity=severity, limit=size)}
        except Exception as exc:  # noqa: BLE001
            log.exception("findings query failed")
            raise HTTPException(status_code=500, detail="findings query failed") from exc

    @app.get("/api/jobs")
    async def api_jobs(
        request: Request,
        workflow: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        size: int = Query(20, ge=1, le=200),
    ):
        try:
            return {"jobs": await _orch(request).list_jobs(workflow=workflow, status=status, limit=size)}
        except Exception as exc:  # noqa: BLE001
            log.exception("jobs query failed")
            raise HTTPException(status_code=500, detail="jobs query failed") from exc

    @app.get("/api/health")
    async def api_health(request: Request):
        try:
            return await _orch(request).verify()
        except Exception as exc:  # noqa: BLE001
            log.exception("health check failed")
            raise HTTPException(status_code=500, detail="health check failed") from exc

    return app


app = create_app()
