"""
Convert nmap ``-oX`` output with the vulners script into plain dicts:

    [{"host": ..., "ports": [{"port", "protocol", "service", "product",
      "version", "script": {"vulners": [{"id", "cvss", "type"}]}}]}]

Only open ports are kept.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


def _float(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except ValueError:
        return None


def _vulners(port_el: ET.Element) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for script in port_el.findall("script"):
        if script.get("id") != "vulners":
            continue
        for entry in script.iter("table"):
            elems = {e.get("key"): (e.text or "").strip() for e in entry.findall("elem")}
            if not elems.get("id"):
                continue
            out.append({"id": elems["id"], "cvss": _float(elems.get("cvss")), "type": elems.get("type")})
    return out


def parse_nmap_xml(text: str) -> List[Dict[str, Any]]:
    if not text.strip():
        return []
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        log.warning("unparseable nmap xml: %s", exc)
        return []

    hosts: List[Dict[str, Any]] = []
    for host_el in root.findall("host"):
        name_el = host_el.find("hostnames/hostname")
        addr_el = host_el.find("address")
        host = name_el.get("name") if name_el is not None else (addr_el.get("addr") if addr_el is not None else None)
        ports: List[Dict[str, Any]] = []
        for port_el in host_el.findall("ports/port"):
            state = port_el.find("state")
            if state is None or state.get("state") != "open":
                continue
            service = port_el.find("service")
            ports.append(
                {
                    "port": int(port_el.get("portid", "0")),
                    "protocol": port_el.get("protocol", "tcp"),
                    "service": service.get("name") if service is not None else None,
                    "product": service.get("product") if service is not None else None,
                    "version": service.get("version") if service is not None else None,
                    "script": {"vulners": _vulners(port_el)},
                }
            )
        hosts.append({"host": host, "ports": ports})
    return hosts
