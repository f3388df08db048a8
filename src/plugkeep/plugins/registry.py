"""Plugin metadata registry."""

from __future__ import annotations

import threading
from typing import Protocol

from plugkeep.plugins.manifest import PluginDescriptor


class Registry(Protocol):
    """Source of truth for plugin discovery."""

    def find(self, name: str) -> PluginDescriptor | None: ...

    def list(self) -> list[PluginDescriptor]: ...

    def upsert(self, descriptor: PluginDescriptor) -> None: ...


class InMemoryRegistry:
    """Thread-safe registry keeping the latest descriptor per plugin name."""

    def __init__(self, descriptors: list[PluginDescriptor] | None = None):
        self._descriptors: dict[str, PluginDescriptor] = {}
        self._lock = threading.Lock()
        for descriptor in descriptors or []:
            self.upsert(descriptor)

    def find(self, name: str) -> PluginDescriptor | None:
        with self._lock:
            return self._descriptors.get(name)

    def list(self) -> list[PluginDescriptor]:
        with self._lock:
            return [self._descriptors[name] for name in sorted(self._descriptors)]

    def upsert(self, descriptor: PluginDescriptor) -> None:
        with self._lock:
            self._descriptors[descriptor.name] = descriptor

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._descriptors.pop(name, None) is not None

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors
