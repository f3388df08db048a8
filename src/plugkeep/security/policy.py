"""Per-plugin security policies.

A :class:`SecurityPolicy` is built once when a plugin is loaded and never
changes afterwards; new limits take effect only through a reload.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, model_validator

from plugkeep.security.permissions import Capability, grant

if TYPE_CHECKING:
    from plugkeep.config.schema import PluginOptions
    from plugkeep.plugins.manifest import PluginDescriptor

logger = logging.getLogger(__name__)


class SecurityPolicy(BaseModel):
    """Immutable resource and capability limits for one plugin."""

    model_config = ConfigDict(frozen=True)

    plugin: str = Field(..., description="Plugin the policy applies to")
    max_memory_mb: float = Field(default=256.0, gt=0)
    max_cpu_seconds: float = Field(default=60.0, gt=0)
    max_network_requests_per_window: int = Field(default=100, ge=0)
    allowed_network_destinations: frozenset[str] = Field(default_factory=frozenset)
    requested: frozenset[Capability] = Field(
        default_factory=frozenset,
        description="Capabilities declared by the plugin",
    )
    granted: frozenset[Capability] = Field(
        default_factory=frozenset,
        description="Capabilities the plugin may invoke (subset of requested)",
    )
    rate_limit_per_minute: int = Field(default=100, ge=1)
    violation_threshold: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _granted_within_requested(self) -> SecurityPolicy:
        extra = self.granted - self.requested
        if extra:
            names = sorted(c.value for c in extra)
            raise ValueError(f"Granted capabilities not requested by '{self.plugin}': {names}")
        return self

    def allows(self, capability: Capability) -> bool:
        """Check whether a capability is granted."""
        return capability in self.granted

    def allows_destination(self, destination: str) -> bool:
        """Check if a network destination matches the allow-list.

        Accepts bare hosts or URLs. Supports exact matches and wildcard
        patterns (``*.example.com`` matches ``api.example.com`` and
        ``example.com``).

        Args:
            destination: Host name or URL

        Returns:
            True if allowed, False otherwise
        """
        host = destination_host(destination)
        if not host:
            return False

        for pattern in self.allowed_network_destinations:
            pattern = pattern.lower().strip()

            if pattern == "*" or pattern == host:
                return True

            if pattern.startswith("*."):
                suffix = pattern[2:]
                if host == suffix or host.endswith("." + suffix):
                    return True

        return False


def destination_host(destination: str) -> str:
    """Extract the lower-cased host from a host name or URL."""
    destination = destination.strip()
    if "://" in destination:
        return (urlsplit(destination).hostname or "").lower()
    host, sep, port = destination.rpartition(":")
    if sep and port.isdigit():
        return host.lower()
    return destination.lower()


def build_policy(descriptor: PluginDescriptor, options: PluginOptions) -> SecurityPolicy:
    """Construct the security policy for a plugin being loaded.

    The granted set is the intersection of what the plugin requested and what
    the administrator approved in ``options.permissions``.

    Args:
        descriptor: Plugin identity and declared permissions
        options: Effective per-plugin options

    Returns:
        Frozen security policy
    """
    granted = grant(descriptor.permissions, options.permissions)
    denied = descriptor.permissions - granted
    if denied:
        logger.info(
            "Plugin '%s' requested capabilities not approved: %s",
            descriptor.name,
            sorted(c.value for c in denied),
        )

    return SecurityPolicy(
        plugin=descriptor.name,
        max_memory_mb=options.max_memory_mb,
        max_cpu_seconds=options.max_cpu_seconds,
        max_network_requests_per_window=options.max_network_requests_per_window,
        allowed_network_destinations=frozenset(
            d.lower().strip() for d in options.allowed_network_destinations
        ),
        requested=descriptor.permissions,
        granted=granted,
        rate_limit_per_minute=options.rate_limit_per_minute,
        violation_threshold=options.violation_threshold,
    )
