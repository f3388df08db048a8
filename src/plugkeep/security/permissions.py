"""Capability identifiers and permission checks.

Host capabilities form a fixed enumeration. Providers are bound to these
variants at startup, so every permission check is a set-membership test over
known identifiers rather than open-ended dispatch on arbitrary strings.
"""

from collections.abc import Iterable
from enum import Enum


class Capability(str, Enum):
    """Host-provided operations a plugin may be granted."""

    STATUS_QUERY = "status.query"
    TASK_CREATE = "task.create"
    MEMORY_READ = "memory.read"
    MEMORY_WRITE = "memory.write"
    AGENT_MESSAGE = "agent.message"
    CONTEXT_BUILD = "context.build"
    PLANNING_SUBMIT = "planning.submit"
    NETWORK_REQUEST = "network.request"

    @classmethod
    def parse(cls, value: "str | Capability") -> "Capability | None":
        """Parse a capability identifier, returning None if unknown."""
        if isinstance(value, Capability):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


KNOWN_CAPABILITIES: frozenset[str] = frozenset(c.value for c in Capability)

# Capabilities whose calls leave the host and count against network limits
NETWORK_CAPABILITIES: frozenset[Capability] = frozenset({Capability.NETWORK_REQUEST})


def parse_capabilities(values: Iterable[str]) -> tuple[frozenset[Capability], list[str]]:
    """Split identifiers into known capabilities and unknown leftovers.

    Returns:
        Tuple of (known capabilities, unknown identifiers)
    """
    known: set[Capability] = set()
    unknown: list[str] = []
    for value in values:
        capability = Capability.parse(value)
        if capability is None:
            unknown.append(value)
        else:
            known.add(capability)
    return frozenset(known), unknown


def grant(
    requested: Iterable[Capability],
    approved: Iterable[str] | None = None,
) -> frozenset[Capability]:
    """Compute the granted set: requested capabilities the host approved.

    The result is always a subset of ``requested``; approvals for capabilities
    the plugin never requested are ignored.

    Args:
        requested: Capabilities declared by the plugin
        approved: Administrator-approved identifiers (None approves everything requested)

    Returns:
        Granted capabilities
    """
    requested_set = frozenset(requested)
    if approved is None:
        return requested_set
    approved_set, _ = parse_capabilities(approved)
    return requested_set & approved_set


def is_granted(granted: Iterable[Capability], capability: "str | Capability") -> bool:
    """Check whether a capability identifier is in a granted set."""
    parsed = Capability.parse(capability)
    return parsed is not None and parsed in frozenset(granted)
