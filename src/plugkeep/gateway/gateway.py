"""Plugin API Gateway - single entry point for plugin-to-host calls.

Every request passes, in order: lifecycle gate (plugin must be Active),
capability permission check, per-plugin token bucket, sandbox network gate
(for network capabilities), then routing to the bound host provider under a
timeout. Rejections are returned as normal responses and reported to the
sandbox so repeated abuse counts toward forced termination.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from plugkeep.errors import (
    InvalidRequestError,
    NotActiveError,
    PermissionDeniedError,
    PlugkeepError,
    PluginTimeoutError,
    RateLimitedError,
    UnavailableError,
)
from plugkeep.gateway.providers import CapabilityProvider
from plugkeep.gateway.ratelimit import RateLimiter
from plugkeep.protocol import APIRequest, APIResponse, ErrorKind
from plugkeep.security.monitor import ViolationKind
from plugkeep.security.permissions import NETWORK_CAPABILITIES, Capability
from plugkeep.security.policy import SecurityPolicy

if TYPE_CHECKING:
    from plugkeep.plugins.lifecycle import LifecycleEvent
    from plugkeep.security.sandbox import SecuritySandbox

logger = logging.getLogger(__name__)

# Gateway rejections that count toward the sandbox violation threshold
_REPORTED_KINDS: dict[ErrorKind, ViolationKind] = {
    ErrorKind.NOT_ACTIVE: ViolationKind.NOT_ACTIVE,
    ErrorKind.PERMISSION_DENIED: ViolationKind.PERMISSION,
    ErrorKind.RATE_LIMITED: ViolationKind.RATE_LIMIT,
    ErrorKind.TIMEOUT: ViolationKind.TIMEOUT,
}


@dataclass
class GatewayBinding:
    """Gateway-side state for a plugin that is accepting requests."""

    plugin: str
    policy: SecurityPolicy
    bound_at: float = field(default_factory=time.time)
    requests: int = 0
    denied: int = 0


def network_destination(payload: dict[str, Any]) -> str | None:
    """Extract the target of a network capability call."""
    destination = payload.get("url") or payload.get("destination")
    return str(destination) if destination else None


class PluginAPIGateway:
    """Permission-checked, rate-limited router between plugins and the host."""

    def __init__(
        self,
        sandbox: SecuritySandbox,
        request_timeout: float = 30.0,
        bucket_capacity: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize gateway.

        Args:
            sandbox: Sandbox consulted for network gating and violation reports
            request_timeout: Default maximum wait for a provider response
            bucket_capacity: Token-bucket burst size for every plugin
                (defaults to each plugin's per-minute rate limit)
            clock: Monotonic time source for rate limiting
        """
        self.sandbox = sandbox
        self.request_timeout = request_timeout
        self.bucket_capacity = bucket_capacity
        self.start_time = time.time()
        self._limiter = RateLimiter(clock=clock)
        self._providers: dict[Capability, CapabilityProvider] = {}
        self._bindings: dict[str, GatewayBinding] = {}

    # ------------------------------------------------------------------
    # Providers and bindings
    # ------------------------------------------------------------------

    def bind_provider(self, capability: Capability | str, provider: CapabilityProvider) -> None:
        """Attach the host implementation of a capability.

        Raises:
            ValueError: If the capability identifier is unknown
        """
        parsed = Capability.parse(capability)
        if parsed is None:
            raise ValueError(f"Unknown capability: {capability}")
        self._providers[parsed] = provider
        logger.info("Bound provider %s for capability '%s'", type(provider).__name__, parsed.value)

    @property
    def providers(self) -> dict[Capability, CapabilityProvider]:
        return dict(self._providers)

    def bind(self, plugin: str, policy: SecurityPolicy) -> GatewayBinding:
        """Start accepting requests from a plugin."""
        binding = GatewayBinding(plugin=plugin, policy=policy)
        self._bindings[plugin] = binding
        self._limiter.configure(
            plugin, policy.rate_limit_per_minute, capacity=self.bucket_capacity
        )
        logger.debug("Gateway accepting requests from '%s'", plugin)
        return binding

    def unbind(self, plugin: str) -> None:
        """Stop accepting requests from a plugin."""
        if self._bindings.pop(plugin, None) is not None:
            logger.debug("Gateway refusing requests from '%s'", plugin)
        self._limiter.remove(plugin)

    def is_bound(self, plugin: str) -> bool:
        return plugin in self._bindings

    def binding(self, plugin: str) -> GatewayBinding | None:
        return self._bindings.get(plugin)

    def on_lifecycle_event(self, event: LifecycleEvent) -> None:
        """Open the gate when a plugin becomes Active; close it when it leaves."""
        from plugkeep.plugins.lifecycle import LifecycleState

        if event.new_state == LifecycleState.ACTIVE:
            if event.policy is None:
                logger.error("Activation of '%s' carried no policy; gate stays closed", event.plugin)
                return
            self.bind(event.plugin, event.policy)
        elif event.old_state == LifecycleState.ACTIVE:
            self.unbind(event.plugin)

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def handle(self, request: APIRequest, timeout: float | None = None) -> APIResponse:
        """Handle one plugin-to-host call.

        Args:
            request: The plugin's request
            timeout: Maximum wait for the provider (defaults to request_timeout)

        Returns:
            Response carrying the request's correlation id
        """
        start = time.time()
        plugin = request.plugin
        binding = self._bindings.get(plugin)

        try:
            if binding is None:
                raise NotActiveError(f"Plugin '{plugin}' is not active")
            capability = self._authorize(request, binding)

            if capability in NETWORK_CAPABILITIES:
                destination = network_destination(request.payload)
                if destination is None:
                    raise InvalidRequestError("Network request requires 'url' or 'destination'")
                try:
                    # Sandbox records its own violations for these denials
                    self.sandbox.check_network(plugin, destination)
                except PlugkeepError as e:
                    binding.denied += 1
                    return self._reject(request, e, report=False)

            provider = self._providers.get(capability)
            if provider is None:
                raise UnavailableError(f"No provider bound for capability '{capability.value}'")

            wait = self.request_timeout if timeout is None else timeout
            try:
                result = await asyncio.wait_for(
                    provider.invoke(request.method, request.payload),
                    timeout=wait,
                )
            except TimeoutError as e:
                raise PluginTimeoutError(
                    f"Capability '{capability.value}' did not respond within {wait:g}s"
                ) from e

        except PlugkeepError as e:
            if binding is not None:
                binding.denied += 1
            report = e.kind in _REPORTED_KINDS and self._knows(plugin)
            return self._reject(request, e, report=report)

        except Exception as e:
            logger.warning(
                "Capability '%s.%s' failed for '%s': %s",
                request.capability,
                request.method,
                plugin,
                e,
            )
            return APIResponse.fail(request.correlation_id, ErrorKind.CAPABILITY_ERROR, str(e))

        logger.debug(
            "Handled %s.%s for '%s' in %dms",
            request.capability,
            request.method,
            plugin,
            int((time.time() - start) * 1000),
        )
        return APIResponse.ok(request.correlation_id, result)

    def _authorize(self, request: APIRequest, binding: GatewayBinding) -> Capability:
        """Permission and rate-limit gates, in that order."""
        binding.requests += 1

        capability = Capability.parse(request.capability)
        if capability is None or not binding.policy.allows(capability):
            raise PermissionDeniedError(
                f"Plugin '{request.plugin}' is not granted capability '{request.capability}'"
            )

        allowed, retry_after = self._limiter.try_acquire(request.plugin)
        if not allowed:
            raise RateLimitedError(
                f"Plugin '{request.plugin}' is rate limited; retry in {retry_after:.1f}s"
            )

        return capability

    def _knows(self, plugin: str) -> bool:
        """Whether denials for a plugin identity count as violations."""
        return plugin in self._bindings or self.sandbox.tracks(plugin)

    def _reject(self, request: APIRequest, error: PlugkeepError, report: bool) -> APIResponse:
        logger.info(
            "Rejected %s.%s from '%s': %s",
            request.capability,
            request.method,
            request.plugin,
            error.kind.value,
        )
        if report:
            self.sandbox.report_denial(
                request.plugin,
                _REPORTED_KINDS[error.kind],
                detail=f"{request.capability}.{request.method}",
            )
        return APIResponse.fail(request.correlation_id, error.kind, error.message)

    async def close(self) -> None:
        """Close providers that hold resources."""
        for capability, provider in self._providers.items():
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing provider for '%s': %s", capability.value, e)
