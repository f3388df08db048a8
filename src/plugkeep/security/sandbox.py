"""Cooperative security sandbox for plugin code.

The sandbox owns one :class:`ResourceMonitor` and one :class:`SecurityPolicy`
per active plugin and provides:
- Scoped execution: resource use inside ``enter()`` is attributed to the plugin
- Background sampling: one cancelable task per active plugin
- Network gating: destination allow-list and per-window request counter
- Violation records: append-only trail per plugin
- Escalation: a single forced-termination request once the violation
  threshold is reached inside the rolling window
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from plugkeep.errors import (
    NotActiveError,
    PermissionDeniedError,
    ResourceLimitExceededError,
)
from plugkeep.security.monitor import (
    ResourceMonitor,
    ResourceSample,
    ResourceSnapshot,
    ViolationKind,
)
from plugkeep.security.policy import SecurityPolicy, destination_host

if TYPE_CHECKING:
    from plugkeep.plugins.lifecycle import LifecycleEvent

logger = logging.getLogger(__name__)

DEFAULT_VIOLATION_THRESHOLD = 3


class ResourceSampler(Protocol):
    """Anything that can sample a plugin's resource use."""

    def sample(self) -> ResourceSample | None: ...


@dataclass(frozen=True)
class ViolationRecord:
    """A recorded breach of a resource or permission limit."""

    timestamp: float
    plugin: str
    kind: ViolationKind
    observed: float
    limit: float
    detail: str = ""
    monotonic: float = field(default=0.0, repr=False, compare=False)


@dataclass
class _ActiveScope:
    """Sandbox state held for one active plugin."""

    policy: SecurityPolicy
    monitor: ResourceMonitor
    sampler: ResourceSampler | None = None
    task: asyncio.Task | None = None
    # Window in which each limit kind was last recorded as breached
    reported: dict[ViolationKind, float] = field(default_factory=dict)


_current_scope: contextvars.ContextVar[ScopeHandle | None] = contextvars.ContextVar(
    "plugkeep_current_scope", default=None
)


def current_scope() -> ScopeHandle | None:
    """Get the sandbox scope of the running plugin call, if any."""
    return _current_scope.get()


class ScopeHandle:
    """Handle for one call into plugin code.

    CPU time spent between entering and leaving the scope is attributed to the
    plugin. Plugins that know their own footprint can report it through
    :meth:`account_memory` and :meth:`account_cpu`.
    """

    def __init__(self, plugin: str, monitor: ResourceMonitor):
        self.plugin = plugin
        self._monitor = monitor
        self._cpu_start = time.process_time()
        self.closed = False

    def account_memory(self, memory_mb: float) -> bool:
        """Report current memory use of the plugin."""
        return self._monitor.record_memory(memory_mb)

    def account_cpu(self, seconds: float) -> bool:
        """Report extra CPU time consumed outside this thread."""
        return self._monitor.add_cpu(seconds)

    def snapshot(self) -> ResourceSnapshot:
        """Current counters of the plugin."""
        return self._monitor.snapshot()

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._monitor.add_cpu(time.process_time() - self._cpu_start)


class SecuritySandbox:
    """Enforces security policies for active plugins."""

    def __init__(
        self,
        sample_interval: float = 1.0,
        window_seconds: float = 60.0,
        violation_window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        """Initialize sandbox.

        Args:
            sample_interval: Seconds between sampling ticks
            window_seconds: Resource measurement window length
            violation_window_seconds: Rolling window for the violation threshold
            clock: Monotonic time source (windows, rate computations)
            wall_clock: Wall time source (violation timestamps)
        """
        self.sample_interval = sample_interval
        self.window_seconds = window_seconds
        self.violation_window_seconds = violation_window_seconds
        self._clock = clock
        self._wall_clock = wall_clock

        self._scopes: dict[str, _ActiveScope] = {}
        self._violations: dict[str, list[ViolationRecord]] = {}
        self._thresholds: dict[str, int] = {}
        self._floors: dict[str, float] = {}
        self._terminating: set[str] = set()

        self._violation_listeners: list[Callable[[ViolationRecord], None]] = []
        self.on_terminate: Callable[[str, list[ViolationRecord]], None] | None = None

    # ------------------------------------------------------------------
    # Scope lifecycle
    # ------------------------------------------------------------------

    def establish(
        self,
        plugin: str,
        policy: SecurityPolicy,
        sampler: ResourceSampler | None = None,
    ) -> ResourceMonitor:
        """Start enforcing a policy for a plugin.

        Creates a fresh monitor and starts the plugin's sampling task. Must be
        called from a running event loop.

        Args:
            plugin: Plugin name
            policy: Policy to enforce
            sampler: Optional sampler read on every tick

        Returns:
            The plugin's resource monitor

        Raises:
            RuntimeError: If the plugin already has an active scope
        """
        if plugin in self._scopes:
            raise RuntimeError(f"Sandbox scope already established for '{plugin}'")

        monitor = ResourceMonitor(plugin, window_seconds=self.window_seconds, clock=self._clock)
        scope = _ActiveScope(policy=policy, monitor=monitor, sampler=sampler)
        self._scopes[plugin] = scope
        self._thresholds[plugin] = policy.violation_threshold
        self._terminating.discard(plugin)

        scope.task = asyncio.get_running_loop().create_task(
            self._sampling_loop(plugin, scope),
            name=f"plugkeep-monitor-{plugin}",
        )
        logger.debug("Established sandbox scope for '%s'", plugin)
        return monitor

    async def release(self, plugin: str) -> ResourceSnapshot | None:
        """Stop enforcement for a plugin and wait for its sampler to exit.

        After this returns no further counter writes happen for the plugin.

        Returns:
            Final counters, or None if the plugin had no scope
        """
        scope = self._scopes.pop(plugin, None)
        if scope is None:
            return None

        if scope.task is not None and scope.task is not asyncio.current_task():
            scope.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scope.task

        scope.monitor.freeze()
        logger.debug("Released sandbox scope for '%s'", plugin)
        return scope.monitor.snapshot()

    async def close(self) -> None:
        """Release every active scope."""
        for plugin in list(self._scopes):
            await self.release(plugin)

    def is_established(self, plugin: str) -> bool:
        return plugin in self._scopes

    def policy(self, plugin: str) -> SecurityPolicy | None:
        scope = self._scopes.get(plugin)
        return scope.policy if scope else None

    def monitor(self, plugin: str) -> ResourceMonitor | None:
        scope = self._scopes.get(plugin)
        return scope.monitor if scope else None

    @contextlib.asynccontextmanager
    async def enter(self, plugin: str) -> AsyncIterator[ScopeHandle]:
        """Run plugin code under monitoring.

        Usage:
            async with sandbox.enter("weather") as scope:
                await plugin.activate()

        Instrumentation is released on every exit path; limits are checked
        when the scope closes.

        Raises:
            NotActiveError: If the plugin has no established scope
        """
        scope = self._scopes.get(plugin)
        if scope is None:
            raise NotActiveError(f"No sandbox scope for plugin '{plugin}'")

        handle = ScopeHandle(plugin, scope.monitor)
        token = _current_scope.set(handle)
        try:
            yield handle
        finally:
            _current_scope.reset(token)
            handle._close()
            if self._scopes.get(plugin) is scope:
                self._enforce(plugin, scope)

    # ------------------------------------------------------------------
    # Sampling and enforcement
    # ------------------------------------------------------------------

    async def _sampling_loop(self, plugin: str, scope: _ActiveScope) -> None:
        while True:
            await asyncio.sleep(self.sample_interval)
            try:
                self._sample(plugin, scope)
            except Exception:
                logger.exception("Sampling tick failed for '%s'", plugin)

    def sample(self, plugin: str) -> list[ViolationRecord]:
        """Run one sampling tick for a plugin immediately.

        Returns:
            Violations recorded by this tick
        """
        scope = self._scopes.get(plugin)
        if scope is None:
            return []
        return self._sample(plugin, scope)

    def _sample(self, plugin: str, scope: _ActiveScope) -> list[ViolationRecord]:
        if scope.sampler is not None:
            reading = scope.sampler.sample()
            if reading is not None:
                scope.monitor.record_memory(reading.memory_mb)
                scope.monitor.observe_cpu_total(reading.cpu_seconds)
        return self._enforce(plugin, scope)

    def _enforce(self, plugin: str, scope: _ActiveScope) -> list[ViolationRecord]:
        """Check counters and record breached limits.

        A limit kind is recorded at most once per measurement window, so a
        memory spike counts once even though the high-water mark stays over
        the limit until the window rolls over. CPU time is cumulative and is
        recorded again in each new window while it stays over its limit.
        """
        breaches = scope.monitor.check(scope.policy)
        if not breaches:
            return []

        window = scope.monitor.window_started
        limits = {
            ViolationKind.MEMORY: scope.policy.max_memory_mb,
            ViolationKind.CPU_TIME: scope.policy.max_cpu_seconds,
            ViolationKind.NETWORK_REQUESTS: float(scope.policy.max_network_requests_per_window),
        }
        records = []
        for kind in breaches:
            if scope.reported.get(kind) == window:
                continue
            scope.reported[kind] = window
            records.append(
                self._append(
                    plugin,
                    kind,
                    observed=scope.monitor.observed(kind),
                    limit=limits[kind],
                )
            )
        if records:
            self._escalate(plugin)
        return records

    def check_network(self, plugin: str, destination: str) -> None:
        """Gate one outbound network request.

        Args:
            plugin: Calling plugin
            destination: Target host or URL

        Raises:
            NotActiveError: If the plugin has no established scope
            PermissionDeniedError: If the destination is not allowed
            ResourceLimitExceededError: If the window's request budget is spent
        """
        scope = self._scopes.get(plugin)
        if scope is None:
            raise NotActiveError(f"No sandbox scope for plugin '{plugin}'")

        policy = scope.policy
        if not policy.allows_destination(destination):
            self.record_violation(
                plugin,
                ViolationKind.NETWORK_DESTINATION,
                observed=0.0,
                limit=0.0,
                detail=destination_host(destination) or destination,
            )
            raise PermissionDeniedError(
                f"Destination '{destination}' is not allowed for plugin '{plugin}'"
            )

        if not scope.monitor.try_network_request(policy.max_network_requests_per_window):
            self.record_violation(
                plugin,
                ViolationKind.NETWORK_REQUESTS,
                observed=scope.monitor.observed(ViolationKind.NETWORK_REQUESTS) + 1,
                limit=float(policy.max_network_requests_per_window),
                detail=destination,
            )
            raise ResourceLimitExceededError(
                f"Plugin '{plugin}' exceeded {policy.max_network_requests_per_window} "
                f"network requests per {self.window_seconds:g}s window"
            )

    # ------------------------------------------------------------------
    # Violations
    # ------------------------------------------------------------------

    def add_violation_listener(self, listener: Callable[[ViolationRecord], None]) -> None:
        """Register a callback invoked for every recorded violation."""
        self._violation_listeners.append(listener)

    def record_violation(
        self,
        plugin: str,
        kind: ViolationKind,
        observed: float = 0.0,
        limit: float = 0.0,
        detail: str = "",
    ) -> ViolationRecord:
        """Append a violation and escalate if the threshold is reached."""
        record = self._append(plugin, kind, observed=observed, limit=limit, detail=detail)
        self._escalate(plugin)
        return record

    def report_denial(self, plugin: str, kind: ViolationKind, detail: str = "") -> ViolationRecord:
        """Count a rejected gateway call toward the violation threshold."""
        return self.record_violation(plugin, kind, observed=1.0, limit=0.0, detail=detail)

    def tracks(self, plugin: str) -> bool:
        """Whether the plugin has been established and not unloaded since."""
        return plugin in self._scopes or plugin in self._thresholds

    def _append(
        self,
        plugin: str,
        kind: ViolationKind,
        observed: float,
        limit: float,
        detail: str = "",
    ) -> ViolationRecord:
        record = ViolationRecord(
            timestamp=self._wall_clock(),
            plugin=plugin,
            kind=kind,
            observed=observed,
            limit=limit,
            detail=detail,
            monotonic=self._clock(),
        )
        self._violations.setdefault(plugin, []).append(record)
        logger.warning(
            "Violation by '%s': %s (observed=%g, limit=%g)%s",
            plugin,
            kind.value,
            observed,
            limit,
            f" [{detail}]" if detail else "",
        )
        for listener in self._violation_listeners:
            listener(record)
        return record

    def violations(self, plugin: str) -> list[ViolationRecord]:
        """All violations ever recorded for a plugin, oldest first."""
        return list(self._violations.get(plugin, []))

    def recent_violations(self, plugin: str) -> list[ViolationRecord]:
        """Violations counting toward the threshold right now."""
        start = max(
            self._clock() - self.violation_window_seconds,
            self._floors.get(plugin, float("-inf")),
        )
        return [r for r in self._violations.get(plugin, []) if r.monotonic >= start]

    def reset_violation_window(self, plugin: str) -> None:
        """Stop counting earlier violations toward the threshold.

        Records are kept; only the counting floor moves.
        """
        self._floors[plugin] = self._clock()
        self._terminating.discard(plugin)

    def _escalate(self, plugin: str) -> None:
        """Request forced termination once per plugin when over threshold."""
        if plugin in self._terminating:
            return

        recent = self.recent_violations(plugin)
        threshold = self._thresholds.get(plugin, DEFAULT_VIOLATION_THRESHOLD)
        if len(recent) < threshold:
            return

        self._terminating.add(plugin)
        logger.warning(
            "Plugin '%s' reached %d violations within %gs; requesting termination",
            plugin,
            len(recent),
            self.violation_window_seconds,
        )
        if self.on_terminate is not None:
            self.on_terminate(plugin, recent)

    def termination_pending(self, plugin: str) -> bool:
        return plugin in self._terminating

    def on_lifecycle_event(self, event: LifecycleEvent) -> None:
        """Observe lifecycle transitions.

        Re-entering Active re-arms escalation; unloading forgets the plugin's
        threshold while keeping its violation trail.
        """
        from plugkeep.plugins.lifecycle import LifecycleState

        if event.new_state == LifecycleState.ACTIVE:
            self._terminating.discard(event.plugin)
        elif event.new_state == LifecycleState.UNLOADED:
            self._thresholds.pop(event.plugin, None)
