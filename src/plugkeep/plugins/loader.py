"""Plugin discovery and loading.

Discovers plugins from:
1. Python entry points (plugkeep.plugins group) - installed via pip
2. Local directory (~/.plugkeep/plugins/) - drop-in .py files and packages

Discovery reads ``PLUGIN_META`` from the module source without executing it.
Plugin code only runs when the manager asks for an instance through
:meth:`PluginLoader.import_plugin`, after validation has passed.
"""

from __future__ import annotations

import ast
import dataclasses
import importlib
import importlib.util
import itertools
import logging
import sys
from collections.abc import Callable
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

from plugkeep.errors import LoadFailedError
from plugkeep.plugins.base import Plugin, PluginInstanceHandle
from plugkeep.plugins.manifest import PluginDescriptor
from plugkeep.plugins.registry import Registry

logger = logging.getLogger(__name__)

PluginFactory = Callable[[], Plugin]

_module_counter = itertools.count(1)


class Loader(Protocol):
    """Turns a validated descriptor into an invokable instance."""

    def import_plugin(self, descriptor: PluginDescriptor) -> PluginInstanceHandle: ...

    def release(self, handle: PluginInstanceHandle) -> None: ...


def read_plugin_meta(path: Path) -> dict[str, Any]:
    """Read a module-level ``PLUGIN_META`` literal without importing the module.

    Returns:
        The metadata mapping, or an empty dict if the module defines none

    Raises:
        ValueError: If PLUGIN_META is not a plain literal
        SyntaxError: If the module cannot be parsed
    """
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    for node in tree.body:
        if isinstance(node, ast.Assign):
            targets = [t.id for t in node.targets if isinstance(t, ast.Name)]
            value = node.value
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            targets = [node.target.id]
            value = node.value
        else:
            continue
        if "PLUGIN_META" in targets and value is not None:
            meta = ast.literal_eval(value)
            if not isinstance(meta, dict):
                raise ValueError("PLUGIN_META must be a dict literal")
            return meta
    return {}


class PluginLoader:
    """Discovers plugins from entry points and a local directory and imports them."""

    def __init__(
        self,
        plugin_dir: str | Path = "~/.plugkeep/plugins",
        blocked: list[str] | None = None,
        entry_point_group: str = "plugkeep.plugins",
    ) -> None:
        self.plugin_dir = Path(plugin_dir).expanduser()
        self.blocked = set(blocked or [])
        self.entry_point_group = entry_point_group
        self._factories: dict[str, PluginFactory] = {}
        self._errors: dict[str, str] = {}

    @property
    def errors(self) -> dict[str, str]:
        """Discovery errors by plugin name."""
        return dict(self._errors)

    def register(self, descriptor: PluginDescriptor, factory: PluginFactory) -> PluginDescriptor:
        """Register an in-process plugin built by a factory.

        Returns:
            The descriptor, with source forced to "memory"
        """
        if descriptor.source != "memory":
            descriptor = dataclasses.replace(descriptor, source="memory")
        self._factories[descriptor.name] = factory
        return descriptor

    def discover_all(self) -> list[PluginDescriptor]:
        """Discover plugins from all sources.

        Directory plugins shadow entry points with the same name.

        Returns:
            Descriptors sorted by name
        """
        self._errors.clear()
        found: dict[str, PluginDescriptor] = {}
        for descriptor in self._discover_entry_points():
            found[descriptor.name] = descriptor
        for descriptor in self._discover_directory():
            if descriptor.name in found:
                logger.info("Plugin '%s' in %s shadows an entry point", descriptor.name, self.plugin_dir)
            found[descriptor.name] = descriptor
        return [found[name] for name in sorted(found)]

    def populate(self, registry: Registry) -> list[PluginDescriptor]:
        """Discover plugins and upsert them into a registry."""
        descriptors = self.discover_all()
        for descriptor in descriptors:
            registry.upsert(descriptor)
        return descriptors

    def _discover_entry_points(self) -> list[PluginDescriptor]:
        """Discover plugins from Python entry points."""
        descriptors = []
        for ep in entry_points(group=self.entry_point_group):
            if ep.name in self.blocked:
                logger.info("Plugin '%s' is blocked, skipping", ep.name)
                continue

            meta: dict[str, Any] = {}
            source_path = _module_source(ep.module)
            if source_path is not None:
                try:
                    meta = read_plugin_meta(source_path)
                except (SyntaxError, ValueError, OSError) as e:
                    logger.warning("Cannot read metadata of plugin '%s': %s", ep.name, e)
                    self._errors[ep.name] = str(e)
            descriptors.append(
                PluginDescriptor.from_meta(
                    meta, default_name=ep.name, source="entrypoint", location=ep.value
                )
            )
        return descriptors

    def _discover_directory(self) -> list[PluginDescriptor]:
        """Discover plugins from the local plugin directory."""
        if not self.plugin_dir.exists():
            return []

        candidates: list[tuple[str, Path, Path, str]] = []

        # Single .py files
        for py_file in sorted(self.plugin_dir.glob("*.py")):
            if not py_file.name.startswith("_"):
                candidates.append((py_file.stem, py_file, py_file, "file"))

        # Packages
        for subdir in sorted(self.plugin_dir.iterdir()):
            if not subdir.is_dir() or subdir.name.startswith(("_", ".")):
                continue
            init_path = subdir / "__init__.py"
            if init_path.exists():
                candidates.append((subdir.name, init_path, subdir, "directory"))

        descriptors = []
        for name, meta_path, location, source in candidates:
            if name in self.blocked:
                logger.info("Plugin '%s' is blocked, skipping", name)
                continue
            try:
                meta = read_plugin_meta(meta_path)
            except (SyntaxError, ValueError, OSError) as e:
                logger.warning("Cannot read metadata of plugin '%s' from %s: %s", name, meta_path, e)
                self._errors[name] = str(e)
                meta = {}
            descriptor = PluginDescriptor.from_meta(
                meta, default_name=name, source=source, location=str(location)
            )
            if descriptor.name in self.blocked:
                logger.info("Plugin '%s' is blocked, skipping", descriptor.name)
                continue
            descriptors.append(descriptor)
            logger.debug("Discovered plugin %s (%s)", descriptor.identity, source)
        return descriptors

    # ------------------------------------------------------------------
    # Instantiation
    # ------------------------------------------------------------------

    def import_plugin(self, descriptor: PluginDescriptor) -> PluginInstanceHandle:
        """Execute a plugin's code and build an instance.

        Every call imports a fresh copy of the module under a unique name, so
        an old and a new version can coexist during a reload.

        Raises:
            LoadFailedError: If the module cannot be imported or defines no plugin
        """
        try:
            if descriptor.source == "memory":
                factory = self._factories.get(descriptor.name)
                if factory is None:
                    raise LoadFailedError(f"No factory registered for plugin '{descriptor.name}'")
                return PluginInstanceHandle(descriptor=descriptor, plugin=_check_instance(factory()))

            module_name = f"plugkeep_plugin_{descriptor.name.replace('-', '_')}_{next(_module_counter)}"
            attr = None
            if descriptor.source == "entrypoint":
                target, _, attr = (descriptor.location or "").partition(":")
                module = self._import_entry_point(target, module_name)
            else:
                module = self._import_path(Path(descriptor.location or ""), module_name)

            plugin = _instantiate(module, attr or None)
        except LoadFailedError:
            raise
        except Exception as e:
            raise LoadFailedError(
                f"Failed to import plugin '{descriptor.name}': {e}", details=repr(e)
            ) from e

        logger.info("Imported plugin %s as %s", descriptor.identity, module.__name__)
        return PluginInstanceHandle(
            descriptor=descriptor,
            plugin=plugin,
            module=module,
            module_name=module.__name__,
        )

    def release(self, handle: PluginInstanceHandle) -> None:
        """Drop the module objects created for an instance."""
        if handle.module_name is None:
            return
        prefix = handle.module_name + "."
        for name in [n for n in sys.modules if n == handle.module_name or n.startswith(prefix)]:
            del sys.modules[name]
        logger.debug("Released module %s", handle.module_name)

    def _import_path(self, path: Path, module_name: str) -> ModuleType:
        if path.is_dir():
            spec = importlib.util.spec_from_file_location(
                module_name, path / "__init__.py", submodule_search_locations=[str(path)]
            )
        else:
            spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot create module spec for {path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    def _import_entry_point(self, target: str, module_name: str) -> ModuleType:
        source_path = _module_source(target)
        if source_path is None:
            return importlib.import_module(target)
        if source_path.name == "__init__.py":
            return self._import_path(source_path.parent, module_name)
        return self._import_path(source_path, module_name)


def _module_source(module: str) -> Path | None:
    try:
        spec = importlib.util.find_spec(module)
    except (ImportError, ValueError):
        return None
    if spec is None or not spec.origin or not spec.origin.endswith(".py"):
        return None
    return Path(spec.origin)


def _instantiate(module: ModuleType, attr: str | None) -> Plugin:
    """Build the plugin instance a module exposes.

    Lookup order: the entry point attribute, a ``create_plugin()`` factory,
    then the single :class:`Plugin` subclass defined in the module.
    """
    if attr:
        target: Any = module
        for part in attr.split("."):
            target = getattr(target, part)
        return _check_instance(target() if callable(target) else target)

    factory = getattr(module, "create_plugin", None)
    if callable(factory):
        return _check_instance(factory())

    classes = [
        obj
        for obj in vars(module).values()
        if isinstance(obj, type)
        and issubclass(obj, Plugin)
        and obj is not Plugin
        and obj.__module__ == module.__name__
    ]
    if len(classes) != 1:
        raise LoadFailedError(
            f"Module {module.__name__} must define create_plugin() or exactly one "
            f"Plugin subclass (found {len(classes)})"
        )
    return classes[0]()


def _check_instance(obj: Any) -> Plugin:
    if not isinstance(obj, Plugin):
        raise LoadFailedError(f"Expected a Plugin instance, got {type(obj).__name__}")
    return obj
