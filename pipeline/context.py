"""Shared handles for one pipeline process: settings, store, tool runner, notifier."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from core.config import Settings, get_settings
from core.state import StateManager
from core.store import Store
from notify.discord import Notifier
from tools.runner import ToolRunner

log = logging.getLogger(__name__)


@dataclass
class RunContext:
    settings: Settings
    store: Store
    tools: ToolRunner
    notifier: Notifier

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RunContext":
        settings = settings or get_settings()
        if settings.elasticsearch_url:
            from elk.adapter import ElasticsearchAdapter

            store = Store(ElasticsearchAdapter(settings), offload=True)
            log.info("using elasticsearch store at %s", settings.elasticsearch_url)
        else:
            store = Store(StateManager(settings.json_cache_path))
            log.info("using in-memory store (cache=%s)", settings.json_cache_path)
        return cls(
            settings=settings,
            store=store,
            tools=ToolRunner.from_settings(settings),
            notifier=Notifier(settings),
        )

    async def aclose(self) -> None:
        await self.notifier.aclose()
        await self.store.close()
