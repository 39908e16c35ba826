"""
Shared data models for pipeline interchange and store documents.
Target -> HostRecord -> Finding, plus the CVE index entry and job runs.

Documents are dumped with exclude_none: an unknown optional field is absent
from the stored document, never null.
"""

from __future__ import annotations

import datetime as dt
import hashlib
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["critical", "high", "medium", "low", "info"]
Confidence = Literal["confirmed", "suspected", "needs-review"]
FindingStatus = Literal["open", "triaged", "mitigated", "closed"]
TargetStatus = Literal["active", "snoozed", "retired"]
TargetSource = Literal["bugcrowd", "hackerone", "intigriti", "manual", "other"]
AssetType = Literal["domain", "hostname", "ip", "cidr", "url"]
JobStatus = Literal["running", "success", "failed"]
JobTrigger = Literal["cron", "manual", "webhook", "event"]

SEVERITY_LEVELS: Tuple[str, ...] = ("critical", "high", "medium", "low", "info")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def doc_id(*parts: str) -> str:
    return hashlib.sha1(":".join(parts).encode()).hexdigest()


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


class Document(BaseModel):
    id: str
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)
    tags: List[str] = Field(default_factory=list)

    def to_doc(self) -> Dict[str, Any]:
        # absence means unknown: None and empty collections are not stored
        doc = self.model_dump(mode="json", exclude_none=True)
        return {k: v for k, v in doc.items() if v != [] and v != {}}


class TargetAsset(BaseModel):
    type: AssetType
    value: str


class Target(Document):
    program: str
    source: TargetSource = "manual"
    asset: TargetAsset
    status: TargetStatus = "active"
    first_seen: dt.datetime = Field(default_factory=utcnow)
    last_seen: dt.datetime = Field(default_factory=utcnow)
    notes: Optional[str] = None

    @classmethod
    def create(cls, program: str, asset_type: str, value: str, source: str = "manual") -> "Target":
        return cls(
            id=doc_id(program, value),
            program=program,
            source=source,
            asset=TargetAsset(type=asset_type, value=value),
        )


class PortInfo(BaseModel):
    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    service: Optional[str] = None


class TechInfo(BaseModel):
    name: str
    version: Optional[str] = None
    categories: Optional[List[str]] = None


# A technology fingerprint as matched against the CVE index.
TechFingerprint = TechInfo


class SourceEntry(BaseModel):
    tool: str
    run_id: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HostRecord(Document):
    target_id: str
    host: str
    ip: Optional[str] = None
    ips: List[str] = Field(default_factory=list)
    ports: List[PortInfo] = Field(default_factory=list)
    tech: List[TechInfo] = Field(default_factory=list)
    fingerprints: Dict[str, Any] = Field(default_factory=dict)
    sources: List[SourceEntry] = Field(min_length=1)
    is_alive: bool = False
    last_checked: dt.datetime = Field(default_factory=utcnow)


class CvssInfo(BaseModel):
    base_score: float
    vector: Optional[str] = None
    version: Optional[str] = None


class CveRef(BaseModel):
    id: str
    cvss: Optional[CvssInfo] = None


class Finding(Document):
    host_id: str
    source: str
    title: str
    severity: Severity
    confidence: Confidence
    category: Optional[str] = None
    description: Optional[str] = None
    remediation: Optional[str] = None
    scanner_finding_id: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    cves: List[CveRef] = Field(default_factory=list)
    status: FindingStatus = "open"
    job_id: Optional[str] = None

    @field_validator("category", "description", "remediation", "scanner_finding_id", mode="before")
    @classmethod
    def _blank_to_absent(cls, v: Any) -> Any:
        return None if _is_blank(v) else v

    @field_validator("evidence", mode="before")
    @classmethod
    def _prune_evidence(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: val for k, val in v.items() if not _is_blank(val)}
        return v

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.host_id, self.source, self.title)

    @classmethod
    def key_id(cls, host_id: str, source: str, title: str) -> str:
        return doc_id(host_id, source, title)


class CveDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    base_score: Optional[float] = None
    vector: Optional[str] = None
    cpes: Tuple[str, ...] = ()


class JobError(BaseModel):
    message: str
    stack: Optional[str] = None


class JobRun(Document):
    workflow: str
    trigger: JobTrigger = "manual"
    status: JobStatus = "running"
    started_at: dt.datetime = Field(default_factory=utcnow)
    finished_at: Optional[dt.datetime] = None
    duration_ms: Optional[int] = Field(None, ge=0)
    stats: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[JobError] = None
