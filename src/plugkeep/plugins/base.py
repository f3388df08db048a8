"""Base class and runtime context for plugins.

Plugins subclass :class:`Plugin` and override the hooks they need. Hooks may
be plain methods or coroutines; the manager awaits either. Plugins reach the
host exclusively through :meth:`PluginContext.call`.

Example:
    class Counter(Plugin):
        def __init__(self):
            super().__init__()
            self.count = 0

        async def increment(self):
            self.count += 1
            return self.count

        def export_state(self):
            return {"count": self.count}

        def import_state(self, state):
            self.count = state.get("count", 0)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from types import ModuleType
from typing import TYPE_CHECKING, Any

from plugkeep.protocol import APIRequest, APIResponse
from plugkeep.security.sandbox import ResourceSampler, current_scope

if TYPE_CHECKING:
    from plugkeep.gateway.gateway import PluginAPIGateway
    from plugkeep.plugins.manifest import PluginDescriptor


async def maybe_await(value: Any) -> Any:
    """Await a hook result if it is awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class PluginContext:
    """Host services bound to one plugin instance."""

    def __init__(self, plugin: str, gateway: PluginAPIGateway, config: dict[str, Any] | None = None):
        self.plugin = plugin
        self.config = dict(config or {})
        self.logger = logging.getLogger(f"plugkeep.plugin.{plugin}")
        self._gateway = gateway

    async def call(
        self,
        capability: str,
        method: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> APIResponse:
        """Invoke a host capability through the gateway.

        Args:
            capability: Capability identifier (e.g. "memory.read")
            method: Provider method name
            payload: Method arguments
            timeout: Maximum wait (defaults to the gateway's request timeout)

        Returns:
            Gateway response; check ``success`` and ``error``
        """
        request = APIRequest(
            plugin=self.plugin,
            capability=capability,
            method=method,
            payload=payload or {},
        )
        return await self._gateway.handle(request, timeout=timeout)

    def account_memory(self, memory_mb: float) -> bool:
        """Report current memory use to the active sandbox scope."""
        scope = current_scope()
        if scope is None or scope.plugin != self.plugin:
            return False
        return scope.account_memory(memory_mb)

    def account_cpu(self, seconds: float) -> bool:
        """Report CPU time spent outside the calling thread."""
        scope = current_scope()
        if scope is None or scope.plugin != self.plugin:
            return False
        return scope.account_cpu(seconds)


class Plugin:
    """Base class for plugins. Every hook is optional.

    Plugins that run work in a separate process set ``worker_pid`` in
    ``load()``; the sandbox then samples that process with psutil.
    """

    def __init__(self) -> None:
        self.context: PluginContext | None = None
        self.worker_pid: int | None = None

    def bind_context(self, context: PluginContext) -> None:
        """Attach host services. Called by the manager before load()."""
        self.context = context

    async def load(self, config: dict[str, Any]) -> None:
        """Initialize with the plugin's configuration."""

    async def unload(self) -> None:
        """Release everything acquired in load()."""

    async def activate(self) -> None:
        """Start serving."""

    async def deactivate(self) -> None:
        """Stop serving; state is kept until unload()."""

    async def health_check(self) -> bool:
        return True

    def export_state(self) -> dict[str, Any]:
        """Snapshot carried across a hot reload."""
        return {}

    def import_state(self, state: dict[str, Any]) -> None:
        """Restore a snapshot produced by export_state()."""


@dataclass
class PluginInstanceHandle:
    """An invokable plugin instance produced by a loader."""

    descriptor: PluginDescriptor
    plugin: Plugin
    module: ModuleType | None = None
    module_name: str | None = None
    sampler: ResourceSampler | None = None
