import asyncio
import sys

import pytest

from core.errors import ToolInvocationError
from tools import commands
from tools.commands import CommandSpec
from tools.runner import RetryPolicy, ToolRunner, json_records


def _py(code, label="py", stdin_lines=None):
    return CommandSpec(sys.executable, ["-c", code], label=label, stdin_lines=stdin_lines)


def test_json_records_skips_noise():
    lines = ["[INF] banner", '{"host": "a"}', "", "{broken", '[{"host": "b"}, 3]']
    assert json_records(lines) == [{"host": "a"}, {"host": "b"}]


@pytest.mark.asyncio
async def test_run_streams_lines_and_archives(tmp_path):
    runner = ToolRunner(str(tmp_path), policy=RetryPolicy(max_attempts=1, timeout_s=30))
    code = "import sys\nprint('banner')\nfor l in sys.stdin: print('{\"host\": \"%s\"}' % l.strip())"
    out = await runner.run(_py(code, stdin_lines=["a.test", "b.test"]), "example.com", "job-1")

    assert out.exit_code == 0
    assert out.records() == [{"host": "a.test"}, {"host": "b.test"}]
    archived = (tmp_path / "job-1" / "py-example.com.jsonl").read_text()
    assert "banner" in archived


@pytest.mark.asyncio
async def test_timeout_kills_and_returns_empty(tmp_path):
    runner = ToolRunner(str(tmp_path), policy=RetryPolicy(max_attempts=1, timeout_s=0.5))
    out = await runner.run(_py("import time; time.sleep(30)"), "t", "job")
    assert out.lines == []
    assert out.exit_code is None


@pytest.mark.asyncio
async def test_missing_binary_is_not_retried(tmp_path):
    runner = ToolRunner(str(tmp_path), policy=RetryPolicy(max_attempts=3, timeout_s=5, backoff_base_s=0))
    spec = CommandSpec("definitely-not-a-real-scanner-binary", [])
    with pytest.raises(ToolInvocationError) as err:
        await runner.invoke(spec, "t", "job")
    assert err.value.retryable is False
    assert (await runner.run(spec, "t", "job")).lines == []


@pytest.mark.asyncio
async def test_nonzero_exit_is_retried_then_fails(tmp_path):
    runner = ToolRunner(str(tmp_path), policy=RetryPolicy(max_attempts=2, timeout_s=5, backoff_base_s=0))
    with pytest.raises(ToolInvocationError, match="exit code 3"):
        await runner.invoke(_py("import sys; print('x'); sys.exit(3)"), "t", "job")
    assert (tmp_path / "job" / "py-t.jsonl").exists()


@pytest.mark.asyncio
async def test_process_cap_is_shared(tmp_path):
    runner = ToolRunner(str(tmp_path), max_processes=2, policy=RetryPolicy(max_attempts=1, timeout_s=30))
    spec = _py("import time; time.sleep(0.2)")
    await asyncio.gather(*(runner.run(spec, f"t{i}", "job") for i in range(5)))
    assert runner.peak_in_flight == 2
    assert runner.in_flight == 0


def test_command_builders():
    nuclei = commands.nuclei("http://a", ["t/x/", "t/y/"], ["xss"], ["high"], label="nuclei-xss")
    assert nuclei.args == ["-u", "http://a", "-t", "t/x/", "-t", "t/y/", "-tags", "xss", "-severity", "high", "-silent", "-jsonl"]
    assert nuclei.label == "nuclei-xss"
    paced = commands.nuclei("http://a", ["t/x/"], limits=commands.NucleiLimits())
    assert paced.args == [
        "-u", "http://a", "-t", "t/x/",
        "-timeout", "60", "-rate-limit", "100", "-bulk-size", "50", "-retries", "2",
        "-silent", "-jsonl",
    ]
    assert commands.httpx(["a", "b"]).stdin_lines == ["a", "b"]
    assert commands.nmap("a").archive_ext == "xml"
    assert commands.subfinder("a").label == "subfinder"
