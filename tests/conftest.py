"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from fiber_runtime.bus import Bus
from fiber_runtime.config import FiberConfig
from fiber_runtime.dispatcher import Dispatcher
from fiber_runtime.plugin import FiberPlugin
from fiber_runtime.routing import TemplateRouter


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_bus():
    """Give every test a clean event bus."""
    Bus.reset()
    yield
    Bus.reset()


class EventRecorder:
    """Collects every bus payload."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, payload: dict[str, Any]) -> None:
        self.events.append(payload)

    @property
    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of(self, event_type: str) -> list[dict[str, Any]]:
        return [e["properties"] for e in self.events if e["type"] == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    rec = EventRecorder()
    Bus._subscriptions.setdefault("*", []).append(rec)
    return rec


@pytest.fixture
def config() -> FiberConfig:
    return FiberConfig(invalidate_after=5.0)


@pytest.fixture
def router() -> TemplateRouter:
    return TemplateRouter()


@pytest.fixture
def plugin(router: TemplateRouter, config: FiberConfig) -> FiberPlugin:
    return FiberPlugin(router, config)


@pytest.fixture
def dispatcher(router: TemplateRouter, plugin: FiberPlugin, config: FiberConfig) -> Dispatcher:
    return Dispatcher(router, plugin, config)
