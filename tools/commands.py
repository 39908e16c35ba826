"""Command lines for the external scanners."""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class CommandSpec:
    tool: str
    args: List[str] = field(default_factory=list)
    label: str = ""
    stdin_lines: Optional[List[str]] = None
    archive_ext: str = "jsonl"

    def __post_init__(self):
        if not self.label:
            object.__setattr__(self, "label", self.tool)


def subfinder(domain: str) -> CommandSpec:
    return CommandSpec("subfinder", ["-d", domain, "-silent", "-json"])


def amass(domain: str) -> CommandSpec:
    return CommandSpec("amass", ["enum", "-passive", "-d", domain, "-json", "/dev/stdout"])


def httpx(hosts: Sequence[str]) -> CommandSpec:
    return CommandSpec(
        "httpx",
        ["-silent", "-json", "-title", "-tech-detect", "-status-code"],
        stdin_lines=list(hosts),
    )


@dataclass(frozen=True)
class NucleiLimits:
    """Request pacing passed to every nuclei run."""

    timeout_s: int = 60
    rate_limit: int = 100
    bulk_size: int = 50
    retries: int = 2

    @classmethod
    def from_settings(cls, settings) -> "NucleiLimits":
        return cls(
            timeout_s=settings.nuclei_timeout_s,
            rate_limit=settings.nuclei_rate_limit,
            bulk_size=settings.nuclei_bulk_size,
            retries=settings.nuclei_retries,
        )

    def args(self) -> List[str]:
        return [
            "-timeout", str(self.timeout_s),
            "-rate-limit", str(self.rate_limit),
            "-bulk-size", str(self.bulk_size),
            "-retries", str(self.retries),
        ]


def nuclei(
    url: str,
    template_dirs: Sequence[str],
    tags: Sequence[str] = (),
    severities: Sequence[str] = (),
    label: str = "nuclei",
    limits: Optional[NucleiLimits] = None,
) -> CommandSpec:
    args = ["-u", url]
    for directory in template_dirs:
        args += ["-t", directory]
    if tags:
        args += ["-tags", ",".join(tags)]
    if severities:
        args += ["-severity", ",".join(severities)]
    if limits is not None:
        args += limits.args()
    args += ["-silent", "-jsonl"]
    return CommandSpec("nuclei", args, label=label)


def nmap(host: str) -> CommandSpec:
    return CommandSpec("nmap", ["-sV", "-Pn", "-T4", "--script", "vulners", "-oX", "-", host], archive_ext="xml")
