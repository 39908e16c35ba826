"""
Normalize scanner output (nuclei, attack profiles, nmap vulners) into Findings
and merge finding lists.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.models import SEVERITY_LEVELS, CveRef, CvssInfo, Finding

log = logging.getLogger(__name__)


def normalize_severity(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    return value if value in SEVERITY_LEVELS else "medium"


def severity_from_score(score: Optional[float]) -> str:
    if score is None:
        return "info"
    if score >= 9:
        return "critical"
    if score >= 7:
        return "high"
    if score >= 4:
        return "medium"
    if score > 0:
        return "low"
    return "info"


def _as_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return v


class NucleiClassification(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cve_id: List[str] = Field(default_factory=list, validation_alias=AliasChoices("cve-id", "cve_id"))
    cvss_score: Optional[float] = Field(None, validation_alias=AliasChoices("cvss-score", "cvss_score"))
    cvss_metrics: Optional[str] = Field(None, validation_alias=AliasChoices("cvss-metrics", "cvss_metrics"))

    @field_validator("cve_id", mode="before")
    @classmethod
    def _split_ids(cls, v: Any) -> Any:
        return _as_list(v)


class NucleiInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    severity: Optional[str] = None
    description: Optional[str] = None
    remediation: Optional[str] = None
    reference: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    cve: Optional[str] = None
    cvss_score: Optional[float] = Field(None, validation_alias=AliasChoices("cvss-score", "cvss_score"))
    classification: Optional[NucleiClassification] = None

    @field_validator("reference", "tags", mode="before")
    @classmethod
    def _split_lists(cls, v: Any) -> Any:
        return _as_list(v)


class NucleiRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    template_id: str = Field(validation_alias=AliasChoices("template-id", "templateID", "template_id"))
    info: NucleiInfo
    host: Optional[str] = None
    matched_at: Optional[str] = Field(None, validation_alias=AliasChoices("matched-at", "matched_at"))
    request: Optional[str] = None
    response: Optional[str] = None
    curl_command: Optional[str] = Field(None, validation_alias=AliasChoices("curl-command", "curl_command"))
    extracted_results: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("extracted-results", "extracted_results")
    )
    timestamp: Optional[str] = None

    def cve_ids(self) -> List[str]:
        ids: List[str] = []
        if self.info.cve:
            ids.append(self.info.cve)
        if self.info.classification:
            ids.extend(self.info.classification.cve_id)
        seen: Dict[str, None] = {}
        for cve in ids:
            seen.setdefault(cve.upper(), None)
        return list(seen)

    def cvss_score(self) -> Optional[float]:
        if self.info.cvss_score is not None:
            return self.info.cvss_score
        if self.info.classification:
            return self.info.classification.cvss_score
        return None


class VulnersEntry(BaseModel):
    id: str
    cvss: Optional[float] = None
    type: Optional[str] = None
    description: Optional[str] = None


class NmapScript(BaseModel):
    vulners: List[VulnersEntry] = Field(default_factory=list)


class NmapPort(BaseModel):
    port: int
    protocol: Optional[str] = None
    service: Optional[str] = None
    product: Optional[str] = None
    version: Optional[str] = None
    script: Optional[NmapScript] = None


class NmapHost(BaseModel):
    host: Optional[str] = None
    ports: List[NmapPort] = Field(default_factory=list)


def _records(raw: Any) -> List[Any]:
    if isinstance(raw, dict):
        return [raw]
    if isinstance(raw, list):
        return raw
    log.warning("expected a list of records, got %s", type(raw).__name__)
    return []


def _cve_ref(cve_id: str, score: Optional[float], vector: Optional[str] = None) -> CveRef:
    if score is None:
        return CveRef(id=cve_id)
    return CveRef(id=cve_id, cvss=CvssInfo(base_score=score, vector=vector, version="3.x"))


def parse_nuclei(raw: Any, host_id: str, job_id: str, profile: Any = None) -> List[Finding]:
    """
    ``profile`` is an attack profile: it supplies the finding source, an
    optional fixed severity, a fallback title and a category.
    """
    findings: List[Finding] = []
    for item in _records(raw):
        try:
            rec = NucleiRecord.model_validate(item)
        except ValidationError as exc:
            log.debug("skipping malformed nuclei record: %s", exc.error_count())
            continue

        cve_ids = rec.cve_ids()
        score = rec.cvss_score()
        vector = rec.info.classification.cvss_metrics if rec.info.classification else None
        cves = [_cve_ref(cid, score, vector) for cid in cve_ids]

        if profile is not None:
            source = profile.source
            severity = profile.severity or normalize_severity(rec.info.severity)
            title = rec.info.name or profile.default_title
            category = profile.category
            confidence = "confirmed" if cves else "suspected"
        else:
            source = "nuclei"
            severity = normalize_severity(rec.info.severity)
            title = rec.info.name or rec.template_id
            category = ", ".join(rec.info.tags)
            confidence = "confirmed" if cves else "needs-review"

        evidence = {
            "host": rec.host,
            "matched_at": rec.matched_at,
            "template_id": rec.template_id,
            "request": rec.request,
            "response": rec.response,
            "curl_command": rec.curl_command,
            "extracted_results": rec.extracted_results or None,
            "references": rec.info.reference or None,
            "timestamp": rec.timestamp,
            "job_id": job_id,
        }
        findings.append(
            Finding(
                id=Finding.key_id(host_id, source, title),
                host_id=host_id,
                source=source,
                title=title,
                severity=severity,
                confidence=confidence,
                category=category,
                description=rec.info.description,
                remediation=rec.info.remediation,
                scanner_finding_id=rec.template_id,
                evidence=evidence,
                cves=cves,
                job_id=job_id,
            )
        )
    return findings


def parse_nmap(raw: Any, host_id: str, job_id: str) -> List[Finding]:
    findings: List[Finding] = []
    for item in _records(raw):
        try:
            host = NmapHost.model_validate(item)
        except ValidationError as exc:
            log.debug("skipping malformed nmap record: %s", exc.error_count())
            continue
        for port in host.ports:
            vulners = port.script.vulners if port.script else []
            for entry in vulners:
                is_cve = entry.id.upper().startswith("CVE-")
                title = f"{entry.id} on port {port.port}"
                findings.append(
                    Finding(
                        id=Finding.key_id(host_id, "nmap", title),
                        host_id=host_id,
                        source="nmap",
                        title=title,
                        severity=severity_from_score(entry.cvss),
                        confidence="confirmed" if is_cve else "suspected",
                        category=port.service or port.product,
                        description=entry.description,
                        scanner_finding_id=entry.id,
                        evidence={
                            "host": host.host,
                            "port": port.port,
                            "service": port.service,
                            "product": port.product,
                            "version": port.version,
                            "job_id": job_id,
                        },
                        cves=[_cve_ref(entry.id, entry.cvss)] if is_cve else [],
                        job_id=job_id,
                    )
                )
    return findings


def normalize(tool_name: str, raw: Any, host_id: str, job_id: str, profile: Any = None) -> List[Finding]:
    tool = tool_name.lower()
    if tool == "nuclei":
        return parse_nuclei(raw, host_id, job_id, profile)
    if tool == "nmap":
        return parse_nmap(raw, host_id, job_id)
    raise ValueError(f"no finding parser for tool {tool_name}")


def merge_findings(*lists: Iterable[Finding]) -> List[Finding]:
    """Concatenate, keeping the first finding per (host_id, source, title)."""
    seen = set()
    merged: List[Finding] = []
    for findings in lists:
        for finding in findings:
            if finding.dedup_key in seen:
                continue
            seen.add(finding.dedup_key)
            merged.append(finding)
    return merged
