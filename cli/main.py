import argparse
import asyncio
import json
import logging

from core.config import get_settings
from pipeline.context import RunContext
from pipeline.orchestrator import Orchestrator

log = logging.getLogger(__name__)


def _print(obj):
    print(json.dumps(obj, indent=2, default=str))


async def _with_orchestrator(fn):
    settings = get_settings()
    if not settings.elasticsearch_url and not settings.json_cache_path:
        log.warning("no ELASTICSEARCH_URL or JSON_CACHE_PATH set, state will not outlive this command")
    ctx = RunContext.from_settings(settings)
    try:
        return await fn(Orchestrator(ctx))
    finally:
        await ctx.aclose()


def _run(fn):
    return asyncio.run(_with_orchestrator(fn))


def cmd_add_target(args):
    async def _go(orch):
        target, created = await orch.add_target(args.program, args.value, args.type, args.source, args.notes)
        return {"created": created, "target": target.to_doc()}

    _print(_run(_go))


def cmd_recon(args):
    job = _run(lambda orch: orch.run_recon(trigger=args.trigger, limit=args.limit))
    _print(job.to_doc())


def cmd_attack(args):
    job = _run(lambda orch: orch.run_attack(trigger=args.trigger, limit=args.limit))
    _print(job.to_doc())


def cmd_vuln(args):
    job = _run(lambda orch: orch.run_vuln(trigger=args.trigger, limit=args.limit))
    _print(job.to_doc())


def cmd_hosts(args):
    alive = True if args.alive else None
    _print(_run(lambda orch: orch.list_hosts(target_id=args.target_id, alive=alive, limit=args.size)))


def cmd_findings(args):
    _print(_run(lambda orch: orch.list_findings(host_id=args.host_id, severity=args.severity, limit=args.size)))


def cmd_jobs(args):
    _print(_run(lambda orch: orch.list_jobs(workflow=args.workflow, status=args.status, limit=args.size)))


def cmd_verify(args):
    _print(_run(lambda orch: orch.verify()))


def _add_stage_args(p):
    p.add_argument("--limit", type=int, default=None, help="max items for this run")
    p.add_argument("--trigger", default="manual", choices=["cron", "manual", "webhook", "event"])


def main():
    parser = argparse.ArgumentParser(description="Bug bounty recon / attack / vuln pipeline (single node)")
    sub = parser.add_subparsers()

    p_add = sub.add_parser("add-target", help="Register a program target")
    p_add.add_argument("program", help="e.g. hackerone:acme")
    p_add.add_argument("value", help="domain, hostname, ip, cidr or url")
    p_add.add_argument("--type", default="domain", choices=["domain", "hostname", "ip", "cidr", "url"])
    p_add.add_argument("--source", default="manual", choices=["bugcrowd", "hackerone", "intigriti", "manual", "other"])
    p_add.add_argument("--notes", default=None)
    p_add.set_defaults(func=cmd_add_target)

    p_recon = sub.add_parser("recon", help="Subdomain discovery + HTTP probing for active targets")
    _add_stage_args(p_recon)
    p_recon.set_defaults(func=cmd_recon)

    p_attack = sub.add_parser("attack", help="Nuclei attack profiles against alive hosts")
    _add_stage_args(p_attack)
    p_attack.set_defaults(func=cmd_attack)

    p_vuln = sub.add_parser("vuln", help="Vulnerability scan + CVE correlation for alive hosts")
    _add_stage_args(p_vuln)
    p_vuln.set_defaults(func=cmd_vuln)

    p_hosts = sub.add_parser("hosts", help="List host records")
    p_hosts.add_argument("--target-id", default=None)
    p_hosts.add_argument("--alive", action="store_true", default=False)
    p_hosts.add_argument("--size", type=int, default=50)
    p_hosts.set_defaults(func=cmd_hosts)

    p_findings = sub.add_parser("findings", help="List findings")
    p_findings.add_argument("--host-id", default=None)
    p_findings.add_argument("--severity", default=None, choices=["critical", "high", "medium", "low", "info"])
    p_findings.add_argument("--size", type=int, default=50)
    p_findings.set_defaults(func=cmd_findings)

    p_jobs = sub.add_parser("jobs", help="List job runs, newest first")
    p_jobs.add_argument("--workflow", default=None)
    p_jobs.add_argument("--status", default=None, choices=["running", "success", "failed"])
    p_jobs.add_argument("--size", type=int, default=20)
    p_jobs.set_defaults(func=cmd_jobs)

    p_verify = sub.add_parser("verify", help="Config, store and tool availability check")
    p_verify.set_defaults(func=cmd_verify)

    args = parser.parse_args()
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
