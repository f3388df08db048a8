"""Plugin validation: structure, static security scan and declaration sanity.

The static scan parses plugin source with :mod:`ast` and never executes it.
It flags imports and calls that would let a plugin bypass the gateway
(process spawning, raw sockets, native code, dynamic evaluation).
"""

from __future__ import annotations

import ast
import importlib.util
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from packaging.specifiers import InvalidSpecifier
from packaging.version import InvalidVersion, Version

from plugkeep.plugins.manifest import PluginDescriptor, parse_version_range

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_\-]{0,63}$")

DEFAULT_BANNED_IMPORTS = frozenset(
    {
        "subprocess",
        "multiprocessing",
        "ctypes",
        "cffi",
        "pty",
        "socket",
        "ssl",
        "http.client",
        "urllib.request",
        "requests",
        "httpx",
        "aiohttp",
    }
)

DEFAULT_BANNED_CALLS = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "__import__",
        "os.system",
        "os.popen",
        "os.fork",
        "os.kill",
        "os.execv",
        "os.execve",
        "os.spawnv",
        "os.spawnve",
        "importlib.import_module",
    }
)


@dataclass
class ValidationReport:
    """Outcome of validating one plugin."""

    plugin: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        if self.passed:
            return f"'{self.plugin}' passed validation"
        return f"'{self.plugin}' failed validation: " + "; ".join(self.errors)


class Validator(Protocol):
    """Validates a plugin before it may be loaded."""

    def validate(self, descriptor: PluginDescriptor) -> ValidationReport: ...


class _SecurityVisitor(ast.NodeVisitor):
    """Collects banned imports and calls from a module's AST."""

    def __init__(self, filename: str, banned_imports: frozenset[str], banned_calls: frozenset[str]):
        self.filename = filename
        self.banned_imports = banned_imports
        self.banned_calls = banned_calls
        self.findings: list[str] = []

    def _check_module(self, module: str, lineno: int) -> None:
        parts = module.split(".")
        for i in range(1, len(parts) + 1):
            if ".".join(parts[:i]) in self.banned_imports:
                self.findings.append(f"{self.filename}:{lineno}: banned import '{module}'")
                return

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check_module(alias.name, node.lineno)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.module and node.level == 0:
            self._check_module(node.module, node.lineno)
            for alias in node.names:
                self._check_module(f"{node.module}.{alias.name}", node.lineno)
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        name = _dotted_name(node.func)
        if name and name in self.banned_calls:
            self.findings.append(f"{self.filename}:{node.lineno}: banned call '{name}()'")
        self.generic_visit(node)


def _dotted_name(node: ast.AST) -> str | None:
    parts = []
    current = node
    while isinstance(current, ast.Attribute):
        parts.append(current.attr)
        current = current.value
    if isinstance(current, ast.Name):
        parts.append(current.id)
        return ".".join(reversed(parts))
    return None


class PluginValidator:
    """Default validator for descriptors produced by :class:`PluginLoader`."""

    def __init__(
        self,
        banned_imports: frozenset[str] | None = None,
        banned_calls: frozenset[str] | None = None,
        allowed_imports: frozenset[str] | None = None,
    ):
        """Initialize validator.

        Args:
            banned_imports: Modules plugins may not import
            banned_calls: Dotted call names plugins may not use
            allowed_imports: Exceptions removed from the banned set
        """
        imports = banned_imports if banned_imports is not None else DEFAULT_BANNED_IMPORTS
        self.banned_imports = frozenset(imports - (allowed_imports or frozenset()))
        self.banned_calls = banned_calls if banned_calls is not None else DEFAULT_BANNED_CALLS

    def validate(self, descriptor: PluginDescriptor) -> ValidationReport:
        """Run every check against a plugin.

        Returns:
            Report; ``passed`` is False if any error was found
        """
        report = ValidationReport(plugin=descriptor.name)
        self._check_structure(descriptor, report)
        self._check_declarations(descriptor, report)
        self._scan_source(descriptor, report)

        if report.passed:
            logger.debug("Plugin '%s' passed validation", descriptor.name)
        else:
            logger.info(report.summary())
        return report

    def _check_structure(self, descriptor: PluginDescriptor, report: ValidationReport) -> None:
        if not NAME_PATTERN.match(descriptor.name):
            report.errors.append(
                f"Invalid plugin name '{descriptor.name}' "
                "(lowercase letters, digits, '-' and '_'; must start with a letter)"
            )
        try:
            Version(descriptor.version)
        except InvalidVersion:
            report.errors.append(f"Invalid version '{descriptor.version}'")

        if descriptor.source in ("file", "directory") and not descriptor.location:
            report.errors.append("Plugin source location is missing")

    def _check_declarations(self, descriptor: PluginDescriptor, report: ValidationReport) -> None:
        for unknown in descriptor.unknown_permissions:
            report.errors.append(f"Unknown permission '{unknown}'")

        seen: set[str] = set()
        for dep in descriptor.dependencies:
            if dep.name == descriptor.name:
                report.errors.append("Plugin depends on itself")
            if dep.name in seen:
                report.errors.append(f"Duplicate dependency '{dep.name}'")
            seen.add(dep.name)
            try:
                parse_version_range(dep.version_range)
            except InvalidSpecifier:
                report.errors.append(f"Invalid version range '{dep.version_range}' for '{dep.name}'")

        if not descriptor.permissions:
            report.warnings.append("Plugin requests no capabilities")

    def _scan_source(self, descriptor: PluginDescriptor, report: ValidationReport) -> None:
        files = self._source_files(descriptor, report)
        for path in files:
            try:
                tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
            except SyntaxError as e:
                report.errors.append(f"{path.name}:{e.lineno}: syntax error: {e.msg}")
                continue
            except OSError as e:
                report.errors.append(f"Cannot read {path}: {e}")
                continue

            visitor = _SecurityVisitor(path.name, self.banned_imports, self.banned_calls)
            visitor.visit(tree)
            report.errors.extend(visitor.findings)

    def _source_files(self, descriptor: PluginDescriptor, report: ValidationReport) -> list[Path]:
        if descriptor.source == "memory":
            report.warnings.append("In-process plugin; static scan skipped")
            return []

        if descriptor.source == "entrypoint":
            module_name = (descriptor.location or "").split(":")[0]
            try:
                spec = importlib.util.find_spec(module_name) if module_name else None
            except (ImportError, ValueError):
                spec = None
            if spec is None or not spec.origin or not spec.origin.endswith(".py"):
                report.warnings.append("Entry point source not found; static scan skipped")
                return []
            origin = Path(spec.origin)
            if spec.submodule_search_locations:
                return sorted(origin.parent.rglob("*.py"))
            return [origin]

        path = Path(descriptor.location or "")
        if path.is_dir():
            return sorted(path.rglob("*.py"))
        if path.is_file():
            return [path]

        report.errors.append(f"Plugin source not found: {path}")
        return []
