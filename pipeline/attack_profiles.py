"""
Nuclei attack profiles. Each alive host is attacked with every profile
concurrently; all of them share the tool runner's process cap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from core.models import Finding
from pipeline.finding_normalize import parse_nuclei
from tools import commands

log = logging.getLogger(__name__)

_FOCUSED = ("critical", "high", "medium")


@dataclass(frozen=True)
class AttackProfile:
    name: str
    category: str
    template_dirs: Tuple[str, ...]
    tags: Tuple[str, ...] = ()
    severities: Tuple[str, ...] = _FOCUSED
    severity: Optional[str] = None
    default_title: str = "Nuclei Attack Template"

    @property
    def source(self) -> str:
        return f"nuclei-{self.name}"


ATTACK_PROFILES: Tuple[AttackProfile, ...] = (
    AttackProfile(
        name="attack",
        category="general",
        template_dirs=("",),
        severities=("critical", "high", "medium", "low"),
    ),
    AttackProfile(
        name="xss",
        category="xss",
        template_dirs=("exposures/", "vulnerabilities/"),
        tags=("xss", "reflected-xss", "stored-xss"),
        severity="high",
        default_title="XSS Vulnerability",
    ),
    AttackProfile(
        name="path-discovery",
        category="exposure",
        template_dirs=("exposures/", "misconfiguration/"),
        tags=("exposed-panel", "admin-panel", "backup", "config", "debug"),
        severity="medium",
        default_title="Exposed Path/File",
    ),
    AttackProfile(
        name="auth-bypass",
        category="authentication",
        template_dirs=("vulnerabilities/", "exposures/"),
        tags=("auth-bypass", "default-login", "weak-auth", "no-auth"),
        severity="critical",
        default_title="Authentication Bypass",
    ),
    AttackProfile(
        name="ssrf-xxe",
        category="ssrf-xxe",
        template_dirs=("vulnerabilities/",),
        tags=("ssrf", "xxe", "server-side-request-forgery", "xml-external-entity"),
        severity="high",
        default_title="SSRF/XXE Vulnerability",
    ),
    AttackProfile(
        name="injection",
        category="injection",
        template_dirs=("vulnerabilities/",),
        tags=("injection", "command-injection", "file-inclusion", "ldap-injection", "no-sql-injection"),
        severity="critical",
        default_title="Injection Vulnerability",
    ),
)


def profile_command(
    profile: AttackProfile, url: str, templates_root: str, limits: Optional[commands.NucleiLimits] = None
) -> commands.CommandSpec:
    root = templates_root.rstrip("/") + "/"
    dirs = [root + d for d in profile.template_dirs]
    return commands.nuclei(url, dirs, profile.tags, profile.severities, label=profile.source, limits=limits)


async def run_attack_profile(ctx, profile: AttackProfile, url: str, host_id: str, job_id: str) -> List[Finding]:
    spec = profile_command(
        profile, url, ctx.settings.nuclei_templates_dir, commands.NucleiLimits.from_settings(ctx.settings)
    )
    output = await ctx.tools.run(spec, url, job_id)
    findings = parse_nuclei(output.records(), host_id, job_id, profile)
    if findings:
        log.info("%s: %s findings on %s", profile.source, len(findings), url)
    return findings
