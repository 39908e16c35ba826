import pytest

from core.config import Settings
from core.models import Target
from core.state import StateManager
from core.store import Store
from notify.discord import Notifier
from pipeline.context import RunContext
from tools.runner import ToolOutput


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        raw_dir=str(tmp_path / "raw"),
        nvd_feed_path=None,
        elasticsearch_url=None,
        json_cache_path=None,
        discord_webhook_url=None,
        discord_tier_webhooks={},
        tool_backoff_base_s=0,
    )


@pytest.fixture
def store():
    return Store(StateManager())


class FakeTools:
    """Stands in for ToolRunner: returns canned lines keyed by command label."""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.calls = []

    async def run(self, spec, target, job_id):
        self.calls.append((spec.label, target, list(spec.args)))
        lines = self.outputs.get(spec.label, [])
        if callable(lines):
            lines = lines(spec, target)
        return ToolOutput(tool=spec.tool, lines=list(lines), exit_code=0)


@pytest.fixture
def fake_tools():
    return FakeTools()


@pytest.fixture
def ctx(settings, store, fake_tools):
    return RunContext(settings=settings, store=store, tools=fake_tools, notifier=Notifier(settings))


@pytest.fixture
def target():
    return Target.create("hackerone:acme", "domain", "example.com", "hackerone")
