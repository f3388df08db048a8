"""Permission model, security policies, resource monitoring and the sandbox."""

from plugkeep.security.monitor import (
    ProcessSampler,
    ResourceMonitor,
    ResourceSample,
    ResourceSnapshot,
    ViolationKind,
)
from plugkeep.security.permissions import Capability, grant, is_granted, parse_capabilities
from plugkeep.security.policy import SecurityPolicy, build_policy
from plugkeep.security.sandbox import (
    ScopeHandle,
    SecuritySandbox,
    ViolationRecord,
    current_scope,
)

__all__ = [
    "Capability",
    "ProcessSampler",
    "ResourceMonitor",
    "ResourceSample",
    "ResourceSnapshot",
    "ScopeHandle",
    "SecurityPolicy",
    "SecuritySandbox",
    "ViolationKind",
    "ViolationRecord",
    "build_policy",
    "current_scope",
    "grant",
    "is_granted",
    "parse_capabilities",
]
