"""
Fuse subfinder / amass / httpx / securitytrails output into HostRecords.

One accumulator per literal host string. Collections (ips, tech, provenance)
are unions in first-seen order, liveness is OR-ed, and scalar fingerprints
(title, webserver, country) are first-source-wins. A source whose payload
fails validation contributes nothing.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from core.models import HostRecord, PortInfo, SourceEntry, TechInfo, doc_id, utcnow

log = logging.getLogger(__name__)


class SubfinderEntry(BaseModel):
    host: str
    source: Optional[str] = None
    ip: Optional[str] = None


class AmassAddress(BaseModel):
    ip: str


class AmassNode(BaseModel):
    name: str
    addresses: List[AmassAddress] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    tag: Optional[str] = None


class AmassOutput(BaseModel):
    nodes: List[AmassNode] = Field(default_factory=list)


class HttpxTls(BaseModel):
    issuer_dn: Optional[str] = None


class HttpxEntry(BaseModel):
    input: str
    host: str
    port: int
    scheme: str
    status_code: int
    title: Optional[str] = None
    webserver: Optional[str] = None
    tech: List[str] = Field(default_factory=list)
    a: List[str] = Field(default_factory=list)
    tls: Optional[HttpxTls] = None


class TrailsPort(BaseModel):
    port: int
    protocol: Optional[str] = None
    service: Optional[str] = None


class TrailsRecord(BaseModel):
    hostname: str
    lastSeen: Optional[str] = None
    asn: Optional[int] = None
    organization: Optional[str] = None
    country: Optional[str] = None
    ports: List[TrailsPort] = Field(default_factory=list)


class SecurityTrailsOutput(BaseModel):
    records: List[TrailsRecord] = Field(default_factory=list)


class _HostEntry:
    def __init__(self, host: str):
        self.host = host
        self.ips: Dict[str, None] = {}
        self.tech: Dict[str, None] = {}
        self.provenance: Dict[str, None] = {}
        self.ports: Dict[int, Dict[str, Optional[str]]] = {}
        self.scalars: Dict[str, str] = {}
        self.alive = False

    def add_ip(self, ip: Optional[str]):
        if ip:
            self.ips.setdefault(ip, None)

    def add_port(self, port: int, protocol: Optional[str] = None, service: Optional[str] = None):
        if not 1 <= port <= 65535:
            log.debug("ignoring invalid port %s for %s", port, self.host)
            return
        info = self.ports.setdefault(port, {"protocol": None, "service": None})
        if protocol and protocol.lower() in ("tcp", "udp") and not info["protocol"]:
            info["protocol"] = protocol.lower()
        if service and not info["service"]:
            info["service"] = service

    def set_scalar(self, key: str, value: Optional[str]):
        if value and key not in self.scalars:
            self.scalars[key] = value


class _Accumulator:
    def __init__(self):
        self.hosts: Dict[str, _HostEntry] = {}
        self.pipeline: List[str] = []

    def upsert(self, host: str) -> _HostEntry:
        entry = self.hosts.get(host)
        if entry is None:
            entry = self.hosts[host] = _HostEntry(host)
        return entry


def _merge_subfinder(acc: _Accumulator, entries: List[SubfinderEntry]):
    for e in entries:
        host = acc.upsert(e.host)
        host.add_ip(e.ip)
        if e.source:
            host.provenance.setdefault(f"subfinder:{e.source}", None)


def _merge_amass(acc: _Accumulator, output: AmassOutput):
    for node in output.nodes:
        host = acc.upsert(node.name)
        for addr in node.addresses:
            host.add_ip(addr.ip)
        for src in node.sources:
            host.provenance.setdefault(f"amass:{src}", None)


def _merge_httpx(acc: _Accumulator, entries: List[HttpxEntry]):
    for e in entries:
        host = acc.upsert(e.host)
        host.alive = host.alive or e.status_code < 500
        host.set_scalar("title", e.title)
        host.set_scalar("webserver", e.webserver)
        for t in e.tech:
            host.tech.setdefault(t, None)
        for ip in e.a:
            host.add_ip(ip)
        host.add_port(e.port, "tcp", e.scheme)


def _merge_securitytrails(acc: _Accumulator, output: SecurityTrailsOutput):
    for rec in output.records:
        host = acc.upsert(rec.hostname)
        if rec.organization:
            host.provenance.setdefault(f"securitytrails:{rec.organization}", None)
        host.set_scalar("country", rec.country)
        for p in rec.ports:
            host.add_port(p.port, p.protocol, p.service)


# Fixed merge order; it decides which source wins a scalar.
SOURCE_MERGERS: Dict[str, tuple] = {
    "subfinder": (TypeAdapter(List[SubfinderEntry]), _merge_subfinder),
    "amass": (TypeAdapter(AmassOutput), _merge_amass),
    "httpx": (TypeAdapter(List[HttpxEntry]), _merge_httpx),
    "securitytrails": (TypeAdapter(SecurityTrailsOutput), _merge_securitytrails),
}


def _split_tech(raw: str) -> TechInfo:
    name, sep, version = raw.partition(":")
    if sep and name.strip() and version.strip():
        return TechInfo(name=name.strip(), version=version.strip())
    return TechInfo(name=raw.strip())


def normalize_recon(
    source_outputs: Mapping[str, Any],
    target_id: str,
    job_id: str,
    observed_at: Optional[dt.datetime] = None,
) -> List[HostRecord]:
    """Return one HostRecord per unique host, in first-encounter order."""
    for name in source_outputs:
        if name not in SOURCE_MERGERS:
            log.warning("unknown recon source %s ignored", name)

    acc = _Accumulator()
    for name, (adapter, merge) in SOURCE_MERGERS.items():
        payload = source_outputs.get(name)
        if payload is None:
            continue
        try:
            parsed = adapter.validate_python(payload)
        except ValidationError as exc:
            log.warning("%s output failed validation (%s errors), skipped", name, exc.error_count())
            continue
        acc.pipeline.append(name)
        merge(acc, parsed)

    when = observed_at or utcnow()
    records: List[HostRecord] = []
    for entry in acc.hosts.values():
        ips = list(entry.ips)
        records.append(
            HostRecord(
                id=doc_id(target_id, entry.host, job_id),
                created_at=when,
                updated_at=when,
                target_id=target_id,
                host=entry.host,
                ip=ips[0] if ips else None,
                ips=ips,
                ports=[
                    PortInfo(port=port, protocol=info["protocol"] or "tcp", service=info["service"])
                    for port, info in entry.ports.items()
                ],
                tech=[_split_tech(t) for t in entry.tech],
                fingerprints=dict(entry.scalars),
                sources=[
                    SourceEntry(
                        tool="recon-normalize",
                        run_id=job_id,
                        details={"contributors": list(entry.provenance), "pipeline": list(acc.pipeline)},
                    )
                ],
                is_alive=entry.alive,
                last_checked=when,
            )
        )
    return records
