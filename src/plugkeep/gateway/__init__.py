"""Plugin API gateway: permission-checked, rate-limited capability routing."""

from plugkeep.gateway.gateway import GatewayBinding, PluginAPIGateway
from plugkeep.gateway.providers import (
    CallableProvider,
    CapabilityProvider,
    HttpCapabilityProvider,
    NetworkCapabilityProvider,
    ProviderError,
    build_providers,
)
from plugkeep.gateway.ratelimit import RateLimiter, TokenBucket

__all__ = [
    "CallableProvider",
    "CapabilityProvider",
    "GatewayBinding",
    "HttpCapabilityProvider",
    "NetworkCapabilityProvider",
    "PluginAPIGateway",
    "ProviderError",
    "RateLimiter",
    "TokenBucket",
    "build_providers",
]
