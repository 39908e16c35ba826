"""
Scope enforcement: only active targets that belong to an allowlisted
bug-bounty program are scanned, to avoid unauthorized testing.
"""

import logging
from typing import Iterable, Optional

from .config import settings
from .models import Target

log = logging.getLogger(__name__)


def _program_match(program: str, prefixes: Iterable[str]) -> bool:
    program = program.lower()
    return any(program.startswith(p.lower()) for p in prefixes if p)


def is_authorized_target(target: Target, prefixes: Optional[Iterable[str]] = None) -> bool:
    """
    Validate a target against the program allowlist.
    An empty allowlist authorizes nothing.
    """
    allowed = list(settings.allowed_program_prefixes if prefixes is None else prefixes)
    if not allowed:
        return False  # explicit allowlist required
    if target.status != "active":
        log.info("target %s is %s, skipping", target.asset.value, target.status)
        return False
    if not _program_match(target.program, allowed):
        log.info("program %s not eligible for %s", target.program, target.asset.value)
        return False
    return True
