"""
External scanner adapter.

Spawns a scanner as a subprocess, feeds optional stdin, streams stdout line by
line and archives the raw output under ``raw_dir/<job_id>/``. A process-wide
semaphore caps the number of running scanners across every stage and every
per-host fan-out, so outer concurrency times inner fan-out cannot exceed
``max_processes``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.errors import ToolInvocationError

from .commands import CommandSpec

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class RetryPolicy:
    max_attempts: int = 2
    timeout_s: Optional[float] = 900.0
    backoff_base_s: float = 1.0

    def backoff(self, attempt: int) -> float:
        return self.backoff_base_s * (2 ** (attempt - 1)) + random.random() * self.backoff_base_s


@dataclass
class ToolOutput:
    tool: str
    lines: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    archive_path: Optional[str] = None

    def records(self) -> List[Dict[str, Any]]:
        return json_records(self.lines)


def json_records(lines: Iterable[str]) -> List[Dict[str, Any]]:
    """Decode JSON-lines output, skipping banners and partial lines."""
    out: List[Dict[str, Any]] = []
    for line in lines:
        line = line.strip()
        if not line or line[0] not in "{[":
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            log.debug("skipping non-json line: %.80s", line)
            continue
        if isinstance(value, dict):
            out.append(value)
        elif isinstance(value, list):
            out.extend(v for v in value if isinstance(v, dict))
    return out


class ToolRunner:
    def __init__(
        self,
        raw_dir: str,
        bin_dir: Optional[str] = None,
        max_processes: int = 24,
        policy: Optional[RetryPolicy] = None,
    ):
        self.raw_dir = Path(raw_dir)
        self.bin_dir = bin_dir
        self.policy = policy or RetryPolicy()
        self.slots = asyncio.Semaphore(max_processes)
        self.in_flight = 0
        self.peak_in_flight = 0

    @classmethod
    def from_settings(cls, settings) -> "ToolRunner":
        return cls(
            raw_dir=settings.raw_dir,
            bin_dir=settings.tool_bin_dir,
            max_processes=settings.max_tool_processes,
            policy=RetryPolicy(
                max_attempts=settings.tool_max_attempts,
                timeout_s=settings.tool_timeout_s,
                backoff_base_s=settings.tool_backoff_base_s,
            ),
        )

    def _executable(self, tool: str) -> str:
        if self.bin_dir and not os.path.isabs(tool):
            candidate = os.path.join(self.bin_dir, tool)
            if os.path.exists(candidate):
                return candidate
        return tool

    def _archive(self, spec: CommandSpec, target: str, job_id: str, lines: List[str]) -> Optional[str]:
        path = self.raw_dir / _UNSAFE.sub("_", job_id) / f"{spec.label}-{_UNSAFE.sub('_', target)}.{spec.archive_ext}"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(lines) + ("\n" if lines else ""))
        except OSError as exc:
            log.warning("failed to archive %s output to %s: %s", spec.tool, path, exc)
            return None
        return str(path)

    async def _attempt(self, spec: CommandSpec, sink: List[str]) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable(spec.tool),
                *spec.args,
                stdin=asyncio.subprocess.PIPE if spec.stdin_lines is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ToolInvocationError(spec.tool, "not installed or not in PATH", retryable=False) from exc
        except OSError as exc:
            raise ToolInvocationError(spec.tool, f"failed to start: {exc}") from exc

        stderr_tail: List[str] = []

        async def _feed() -> None:
            if spec.stdin_lines is None or proc.stdin is None:
                return
            try:
                proc.stdin.write(("\n".join(spec.stdin_lines) + "\n").encode())
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            finally:
                proc.stdin.close()

        async def _pump(stream, into: List[str], keep: Optional[int] = None) -> None:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                into.append(raw.decode("utf-8", errors="ignore").rstrip("\r\n"))
                if keep and len(into) > keep:
                    del into[0]

        async def _communicate() -> int:
            await asyncio.gather(_feed(), _pump(proc.stdout, sink), _pump(proc.stderr, stderr_tail, keep=20))
            return await proc.wait()

        try:
            code = await asyncio.wait_for(_communicate(), timeout=self.policy.timeout_s)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ToolInvocationError(spec.tool, f"timed out after {self.policy.timeout_s}s")

        if code != 0:
            detail = stderr_tail[-1] if stderr_tail else ""
            raise ToolInvocationError(spec.tool, f"exit code {code} {detail}".strip())
        return code

    async def invoke(self, spec: CommandSpec, target: str, job_id: str) -> ToolOutput:
        """Run with retries; raises ToolInvocationError once attempts are spent."""
        lines: List[str] = []
        code: Optional[int] = None
        try:
            for attempt in range(1, self.policy.max_attempts + 1):
                lines = []
                try:
                    async with self.slots:
                        self.in_flight += 1
                        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                        try:
                            code = await self._attempt(spec, lines)
                        finally:
                            self.in_flight -= 1
                    break
                except ToolInvocationError as exc:
                    if not exc.retryable or attempt >= self.policy.max_attempts:
                        raise
                    delay = self.policy.backoff(attempt)
                    log.warning("%s failed on %s (attempt %s): %s; retrying in %.1fs", spec.tool, target, attempt, exc.reason, delay)
                    await asyncio.sleep(delay)
        finally:
            archive = self._archive(spec, target, job_id, lines)
        return ToolOutput(tool=spec.tool, lines=lines, exit_code=code, archive_path=archive)

    async def run(self, spec: CommandSpec, target: str, job_id: str) -> ToolOutput:
        """Like invoke, but a failed tool yields empty output."""
        try:
            return await self.invoke(spec, target, job_id)
        except ToolInvocationError as exc:
            log.warning("%s gave no output for %s: %s", spec.label, target, exc)
            return ToolOutput(tool=spec.tool)
