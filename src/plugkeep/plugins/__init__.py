"""Plugin lifecycle management.

Plugins are discovered from a drop-in directory or Python entry points,
validated without executing their code, then loaded and activated in
dependency order by the :class:`PluginManager`.
"""

from plugkeep.plugins.base import Plugin, PluginContext, PluginInstanceHandle
from plugkeep.plugins.dependencies import DependencyGraph
from plugkeep.plugins.lifecycle import (
    LifecycleEvent,
    LifecycleState,
    TransitionResult,
    can_transition,
)
from plugkeep.plugins.loader import PluginLoader
from plugkeep.plugins.manager import PluginManager, PluginRecord
from plugkeep.plugins.manifest import DependencySpec, PluginDescriptor
from plugkeep.plugins.registry import InMemoryRegistry, Registry
from plugkeep.plugins.validator import PluginValidator, ValidationReport

__all__ = [
    "DependencyGraph",
    "DependencySpec",
    "InMemoryRegistry",
    "LifecycleEvent",
    "LifecycleState",
    "Plugin",
    "PluginContext",
    "PluginDescriptor",
    "PluginInstanceHandle",
    "PluginLoader",
    "PluginManager",
    "PluginRecord",
    "PluginValidator",
    "Registry",
    "TransitionResult",
    "ValidationReport",
    "can_transition",
]
