"""
CVE correlation against an NVD 1.1 JSON feed: build an id -> CveDetail index,
backfill CVSS data onto findings and suggest candidate CVEs from technology
fingerprints.

``suggest`` is a full scan over techs x entries x cpes; fine for the small
curated feeds this is fed, not for the whole NVD.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from core.models import CveDetail, CvssInfo, Finding, TechFingerprint
from pipeline.finding_normalize import severity_from_score

log = logging.getLogger(__name__)

CveIndex = Dict[str, CveDetail]


class CveDataMeta(BaseModel):
    ID: str


class CveBody(BaseModel):
    CVE_data_meta: CveDataMeta


class CpeMatch(BaseModel):
    vulnerable: bool = False
    cpe23Uri: str


class ConfigNode(BaseModel):
    cpe_match: List[CpeMatch] = Field(default_factory=list)
    children: List["ConfigNode"] = Field(default_factory=list)


class Configurations(BaseModel):
    nodes: List[ConfigNode] = Field(default_factory=list)


class CvssV3(BaseModel):
    baseScore: Optional[float] = None
    vectorString: Optional[str] = None


class BaseMetricV3(BaseModel):
    cvssV3: Optional[CvssV3] = None


class Impact(BaseModel):
    baseMetricV3: Optional[BaseMetricV3] = None


class CveItem(BaseModel):
    cve: CveBody
    configurations: Optional[Configurations] = None
    impact: Optional[Impact] = None


class NvdFeed(BaseModel):
    CVE_Items: List[CveItem] = Field(default_factory=list)


def parse_feed(raw: Any) -> Optional[NvdFeed]:
    try:
        return NvdFeed.model_validate(raw)
    except ValidationError as exc:
        log.warning("nvd feed failed validation (%s errors)", exc.error_count())
        return None


def _vulnerable_cpes(nodes: Iterable[ConfigNode]) -> List[str]:
    cpes: List[str] = []
    for node in nodes:
        cpes.extend(m.cpe23Uri for m in node.cpe_match if m.vulnerable)
        cpes.extend(_vulnerable_cpes(node.children))
    return cpes


def build_index(feed: Any) -> CveIndex:
    if feed is not None and not isinstance(feed, NvdFeed):
        feed = parse_feed(feed)
    index: CveIndex = {}
    if feed is None:
        return index
    for item in feed.CVE_Items:
        cvss = item.impact.baseMetricV3.cvssV3 if item.impact and item.impact.baseMetricV3 else None
        nodes = item.configurations.nodes if item.configurations else []
        index[item.cve.CVE_data_meta.ID] = CveDetail(
            id=item.cve.CVE_data_meta.ID,
            base_score=cvss.baseScore if cvss else None,
            vector=cvss.vectorString if cvss else None,
            cpes=tuple(_vulnerable_cpes(nodes)),
        )
    return index


def load_index(path: Optional[str]) -> CveIndex:
    if not path:
        return {}
    feed_path = Path(path)
    if not feed_path.exists():
        log.warning("nvd feed %s not found, cve enrichment disabled", feed_path)
        return {}
    try:
        raw = json.loads(feed_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("failed to read nvd feed %s: %s", feed_path, exc)
        return {}
    index = build_index(raw)
    log.info("loaded %s cve entries from %s", len(index), feed_path)
    return index


def _enrich_one(finding: Finding, index: CveIndex) -> Finding:
    changed = False
    refs = []
    for ref in finding.cves:
        detail = index.get(ref.id)
        if detail is None or detail.base_score is None:
            refs.append(ref)
            continue
        existing = ref.cvss
        cvss = CvssInfo(
            base_score=detail.base_score,
            vector=detail.vector or (existing.vector if existing else None),
            version=(existing.version if existing else None) or "3.x",
        )
        if cvss != existing:
            changed = True
        refs.append(ref.model_copy(update={"cvss": cvss}))
    if not changed:
        return finding
    return finding.model_copy(update={"cves": refs})


def enrich(findings: Iterable[Finding], index: CveIndex) -> List[Finding]:
    """Backfill CVSS from the index; unmatched findings are returned as-is."""
    return [_enrich_one(f, index) if f.cves else f for f in findings]


def cpe_product(cpe: str) -> Optional[str]:
    parts = cpe.split(":")
    if len(parts) < 5:
        return None
    product = parts[4]
    if product in ("", "*", "-"):
        return None
    return product


def suggest(techs: Iterable[TechFingerprint], index: CveIndex) -> List[Tuple[TechFingerprint, CveDetail]]:
    pairs: List[Tuple[TechFingerprint, CveDetail]] = []
    for tech in techs:
        name = tech.name.lower()
        for detail in index.values():
            for cpe in detail.cpes:
                product = cpe_product(cpe)
                if product and product.lower() in name:
                    pairs.append((tech, detail))
    return pairs


def suggestions_to_findings(
    pairs: Iterable[Tuple[TechFingerprint, CveDetail]], host_id: str, job_id: str
) -> List[Finding]:
    findings: List[Finding] = []
    for tech, detail in pairs:
        title = f"{detail.id} candidate for {tech.name}"
        cvss = CvssInfo(base_score=detail.base_score, vector=detail.vector, version="3.x") if detail.base_score is not None else None
        findings.append(
            Finding(
                id=Finding.key_id(host_id, "cve-suggest", title),
                host_id=host_id,
                source="cve-suggest",
                title=title,
                severity=severity_from_score(detail.base_score),
                confidence="needs-review",
                category="cve-candidate",
                evidence={"tech": tech.name, "version": tech.version, "cpes": list(detail.cpes), "job_id": job_id},
                cves=[{"id": detail.id, "cvss": cvss}],
                job_id=job_id,
            )
        )
    return findings
