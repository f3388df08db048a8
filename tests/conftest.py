"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from plugkeep.config.schema import PlugkeepConfig, PluginOptions
from plugkeep.plugins.base import Plugin
from plugkeep.plugins.manager import PluginManager
from plugkeep.plugins.manifest import PluginDescriptor


class CounterPlugin(Plugin):
    """Counts invocations and carries the count across reloads."""

    def __init__(self) -> None:
        super().__init__()
        self.count = 0
        self.calls: list[str] = []

    async def load(self, config: dict[str, Any]) -> None:
        self.calls.append("load")
        self.count = config.get("start", 0)

    async def activate(self) -> None:
        self.calls.append("activate")

    async def deactivate(self) -> None:
        self.calls.append("deactivate")

    async def unload(self) -> None:
        self.calls.append("unload")

    async def increment(self) -> int:
        self.count += 1
        return self.count

    def export_state(self) -> dict[str, Any]:
        return {"count": self.count}

    def import_state(self, state: dict[str, Any]) -> None:
        self.count = state.get("count", 0)


@pytest.fixture
def default_config() -> PlugkeepConfig:
    """Provide a default configuration for tests."""
    return PlugkeepConfig()


@pytest.fixture
def test_config(tmp_path: Path) -> PlugkeepConfig:
    """Configuration isolated from the user's plugin directory and entry points."""
    config = PlugkeepConfig()
    config.plugins.plugin_dir = str(tmp_path / "plugins")
    config.plugins.entry_point_group = "plugkeep.tests.none"
    config.sandbox.sample_interval = 3600.0
    return config


@pytest.fixture
def manager(test_config: PlugkeepConfig) -> PluginManager:
    """Manager with default collaborators and no discoverable plugins."""
    return PluginManager(config=test_config, hook_timeout=5.0)


@pytest.fixture
def add_plugin() -> Callable[..., PluginDescriptor]:
    """Register an in-process plugin with a manager.

    Usage:
        add_plugin(manager, "counter", CounterPlugin, permissions=["memory.read"])
    """

    def _add(
        manager: PluginManager,
        name: str,
        factory: Callable[[], Plugin],
        version: str = "1.0.0",
        permissions: list[str] | None = None,
        dependencies: list[str] | dict[str, str] | None = None,
        options: PluginOptions | None = None,
    ) -> PluginDescriptor:
        descriptor = PluginDescriptor.from_meta(
            {
                "name": name,
                "version": version,
                "permissions": permissions or [],
                "dependencies": dependencies or [],
            },
            default_name=name,
        )
        descriptor = manager.loader.register(descriptor, factory)
        manager.registry.upsert(descriptor)
        if options is not None:
            manager.config.overrides[name] = options
        manager.discover()
        return descriptor

    return _add


async def start(manager: PluginManager, name: str) -> None:
    """Drive a discovered plugin to Active, failing the test on any error."""
    for step in (manager.validate, manager.load, manager.activate):
        result = await step(name)
        assert result.success, result.message


@pytest.fixture
def counter_cls() -> type[CounterPlugin]:
    return CounterPlugin


@pytest.fixture
def start_plugin() -> Callable[[PluginManager, str], Any]:
    return start
