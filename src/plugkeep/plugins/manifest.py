"""Plugin descriptors and dependency declarations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from plugkeep.security.permissions import Capability, parse_capabilities

_CARET_OR_TILDE = re.compile(r"^([\^~])\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


def parse_version_range(text: str) -> SpecifierSet:
    """Parse a dependency version range.

    Accepts PEP 440 specifiers (``>=1.2,<2``), bare versions (``1.2.0`` means
    exactly that version), ``*`` or empty for any version, and npm-style
    caret/tilde ranges (``^1.2.3``, ``~1.2``).

    Raises:
        InvalidSpecifier: If the range cannot be parsed
    """
    text = text.strip()
    if text in ("", "*"):
        return SpecifierSet("")

    match = _CARET_OR_TILDE.match(text)
    if match:
        op, major, minor, patch = match.groups()
        major_i, minor_i, patch_i = int(major), int(minor or 0), int(patch or 0)
        lower = f"{major_i}.{minor_i}.{patch_i}"
        if op == "~":
            upper = f"{major_i}.{minor_i + 1}.0" if minor is not None else f"{major_i + 1}.0.0"
        elif major_i > 0 or minor is None:
            upper = f"{major_i + 1}.0.0"
        elif minor_i > 0 or patch is None:
            upper = f"0.{minor_i + 1}.0"
        else:
            upper = f"0.0.{patch_i + 1}"
        return SpecifierSet(f">={lower},<{upper}")

    if text[0].isdigit():
        text = f"=={text}"
    return SpecifierSet(text)


@dataclass(frozen=True)
class DependencySpec:
    """A declared dependency: plugin name plus acceptable versions."""

    name: str
    version_range: str = "*"

    def accepts(self, version: str) -> bool:
        """Check whether a version satisfies the range.

        Unparsable ranges or versions never match.
        """
        try:
            return parse_version_range(self.version_range).contains(
                Version(version), prereleases=True
            )
        except (InvalidSpecifier, InvalidVersion):
            return False

    def __str__(self) -> str:
        return self.name if self.version_range in ("", "*") else f"{self.name} {self.version_range}"


@dataclass(frozen=True)
class PluginDescriptor:
    """Immutable identity and declarations of a plugin."""

    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    capabilities: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[Capability] = field(default_factory=frozenset)
    dependencies: tuple[DependencySpec, ...] = ()
    source: str = "memory"  # "entrypoint", "directory", "file", or "memory"
    location: str | None = None
    unknown_permissions: tuple[str, ...] = ()

    @property
    def identity(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def dependency_names(self) -> list[str]:
        return [d.name for d in self.dependencies]

    @classmethod
    def from_meta(
        cls,
        meta: dict[str, Any],
        *,
        default_name: str,
        source: str = "memory",
        location: str | None = None,
    ) -> PluginDescriptor:
        """Build a descriptor from a ``PLUGIN_META`` mapping.

        Dependencies may be given as ``{"name": "range"}``, as a list of
        ``"name"`` / ``"name range"`` strings, or as a list of
        ``{"name": ..., "version": ...}`` mappings.
        """
        permissions, unknown = parse_capabilities(meta.get("permissions", []))
        return cls(
            name=meta.get("name", default_name),
            version=str(meta.get("version", "0.0.0")),
            description=meta.get("description", ""),
            author=meta.get("author", ""),
            capabilities=frozenset(meta.get("capabilities", [])),
            permissions=permissions,
            dependencies=_parse_dependencies(meta.get("dependencies", [])),
            source=source,
            location=location,
            unknown_permissions=tuple(unknown),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "capabilities": sorted(self.capabilities),
            "permissions": sorted(p.value for p in self.permissions),
            "dependencies": [
                {"name": d.name, "version": d.version_range} for d in self.dependencies
            ],
            "source": self.source,
            "location": self.location,
        }


def _parse_dependencies(data: Any) -> tuple[DependencySpec, ...]:
    if isinstance(data, dict):
        return tuple(DependencySpec(name, str(rng or "*")) for name, rng in data.items())

    specs = []
    for item in data:
        if isinstance(item, dict):
            specs.append(DependencySpec(item["name"], str(item.get("version", "*"))))
        else:
            name, _, rng = str(item).strip().partition(" ")
            specs.append(DependencySpec(name, rng.strip() or "*"))
    return tuple(specs)
