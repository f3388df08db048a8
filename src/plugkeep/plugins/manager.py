"""Plugin manager - lifecycle orchestration, dependency ordering and hot reload.

The manager owns the plugin table: one :class:`PluginRecord` per plugin name,
each guarded by its own lock. Lifecycle calls for the same plugin never
interleave; a call arriving while another is in flight is answered with
``Busy``. Calls for different plugins run concurrently.

Every committed transition is published as a :class:`LifecycleEvent`. The
sandbox and the gateway subscribe first, so a plugin's gate closes and its
sandbox state is updated before any other listener sees the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from plugkeep.config.schema import PlugkeepConfig, PluginOptions
from plugkeep.errors import InvalidRequestError, InvalidStateError, NotActiveError
from plugkeep.gateway.gateway import PluginAPIGateway
from plugkeep.plugins.base import PluginContext, PluginInstanceHandle, maybe_await
from plugkeep.plugins.dependencies import DependencyGraph
from plugkeep.plugins.lifecycle import (
    TERMINAL_STATES,
    LifecycleEvent,
    LifecycleState,
    TransitionResult,
    can_transition,
)
from plugkeep.plugins.loader import Loader, PluginLoader
from plugkeep.plugins.manifest import PluginDescriptor
from plugkeep.plugins.registry import InMemoryRegistry, Registry
from plugkeep.plugins.validator import PluginValidator, ValidationReport, Validator
from plugkeep.protocol import ErrorKind
from plugkeep.security.monitor import ProcessSampler, ViolationKind
from plugkeep.security.policy import SecurityPolicy, build_policy
from plugkeep.security.sandbox import SecuritySandbox, ViolationRecord

logger = logging.getLogger(__name__)

LifecycleListener = Callable[[LifecycleEvent], None]

# Violations kept on each plugin record; the sandbox holds the full trail
MAX_RECORD_VIOLATIONS = 100

# Breaches of these limits are recoverable until the threshold is reached
RESOURCE_VIOLATIONS = frozenset(
    {ViolationKind.MEMORY, ViolationKind.CPU_TIME, ViolationKind.NETWORK_REQUESTS}
)


@dataclass
class PluginRecord:
    """One entry of the plugin table."""

    descriptor: PluginDescriptor
    state: LifecycleState = LifecycleState.DISCOVERED
    policy: SecurityPolicy | None = None
    handle: PluginInstanceHandle | None = None
    report: ValidationReport | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    history: list[LifecycleEvent] = field(default_factory=list)
    violations: deque[ViolationRecord] = field(
        default_factory=lambda: deque(maxlen=MAX_RECORD_VIOLATIONS)
    )
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.descriptor.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.descriptor.version,
            "state": self.state.value,
            "granted": sorted(c.value for c in self.policy.granted) if self.policy else [],
            "dependencies": [str(d) for d in self.descriptor.dependencies],
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "violations": len(self.violations),
        }


class PluginManager:
    """Orchestrates plugins from discovery to unload."""

    def __init__(
        self,
        registry: Registry | None = None,
        loader: Loader | None = None,
        validator: Validator | None = None,
        sandbox: SecuritySandbox | None = None,
        gateway: PluginAPIGateway | None = None,
        config: PlugkeepConfig | None = None,
        hook_timeout: float = 30.0,
    ):
        """Initialize manager.

        Args:
            registry: Source of plugin descriptors
            loader: Turns descriptors into instances
            validator: Checks plugins before loading
            sandbox: Security sandbox (built from config if omitted)
            gateway: Plugin API gateway (built from config if omitted)
            config: Per-plugin options and sandbox/gateway settings
            hook_timeout: Maximum wait for any plugin lifecycle hook
        """
        self.config = config or PlugkeepConfig()
        self.registry = registry or InMemoryRegistry()
        self.loader = loader or PluginLoader(
            plugin_dir=self.config.plugins.plugin_dir,
            blocked=self.config.plugins.blocked,
            entry_point_group=self.config.plugins.entry_point_group,
        )
        self.validator = validator or PluginValidator()
        self.sandbox = sandbox or SecuritySandbox(
            sample_interval=self.config.sandbox.sample_interval,
            window_seconds=self.config.sandbox.window_seconds,
            violation_window_seconds=self.config.sandbox.violation_window_seconds,
        )
        self.gateway = gateway or PluginAPIGateway(
            self.sandbox,
            request_timeout=self.config.gateway.request_timeout,
            bucket_capacity=self.config.gateway.bucket_capacity,
        )
        self.hook_timeout = hook_timeout

        self._records: dict[str, PluginRecord] = {}
        self._listeners: list[LifecycleListener] = []
        self._pending: set[asyncio.Task] = set()

        self.sandbox.on_terminate = self._on_terminate
        self.sandbox.add_violation_listener(self._on_violation)

    @classmethod
    def from_config(cls, config: PlugkeepConfig, **kwargs: Any) -> PluginManager:
        """Build a manager with default collaborators for a configuration."""
        return cls(config=config, **kwargs)

    # ------------------------------------------------------------------
    # Plugin table
    # ------------------------------------------------------------------

    def discover(self) -> list[str]:
        """Create records for plugins known to the registry.

        Runs the loader's discovery first when it offers one. Plugins whose
        record is in a terminal state get a fresh record; live records are
        left alone (a newer registry version is picked up by reload).

        Returns:
            Names of newly created records
        """
        populate = getattr(self.loader, "populate", None)
        if populate is not None:
            populate(self.registry)

        created = []
        for descriptor in self.registry.list():
            if not self.options_for(descriptor.name).enabled:
                logger.info("Plugin '%s' is disabled in configuration", descriptor.name)
                continue
            existing = self._records.get(descriptor.name)
            if existing is not None and existing.state not in TERMINAL_STATES:
                continue
            if existing is not None and existing.lock.locked():
                continue
            self._records[descriptor.name] = PluginRecord(descriptor=descriptor)
            created.append(descriptor.name)
            logger.debug("Discovered plugin %s", descriptor.identity)
        return created

    def options_for(self, name: str) -> PluginOptions:
        return self.config.options_for(name)

    def record(self, name: str) -> PluginRecord | None:
        return self._records.get(name)

    def records(self) -> list[PluginRecord]:
        return [self._records[name] for name in sorted(self._records)]

    def state(self, name: str) -> LifecycleState | None:
        record = self._records.get(name)
        return record.state if record else None

    def violations(self, name: str) -> list[ViolationRecord]:
        return self.sandbox.violations(name)

    def subscribe(self, listener: LifecycleListener) -> Callable[[], None]:
        """Register a lifecycle listener.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def graph(self) -> DependencyGraph:
        """Dependency graph over every plugin that has not been unloaded."""
        return DependencyGraph(
            r.descriptor for r in self._records.values() if r.state != LifecycleState.UNLOADED
        )

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def validate(self, name: str) -> TransitionResult:
        """Discovered -> Validated, or Failed with the report attached."""
        return await self._run(name, self._validate)

    async def load(self, name: str) -> TransitionResult:
        """Validated -> Loaded once every dependency is Active."""
        return await self._run(name, self._load)

    async def activate(self, name: str) -> TransitionResult:
        """Loaded -> Active. A failed activation leaves the plugin Loaded."""
        return await self._run(name, self._activate)

    async def deactivate(self, name: str) -> TransitionResult:
        """Active -> Deactivated. No-op success if already Deactivated."""
        return await self._run(name, self._deactivate)

    async def unload(self, name: str) -> TransitionResult:
        """Deactivated -> Unloaded. No-op success if already Unloaded."""
        return await self._run(name, self._unload)

    async def reload(self, name: str) -> TransitionResult:
        """Replace a plugin's code with the registry's current version.

        The exported state of the running instance is imported into the new
        one. If anything fails the previous version stays authoritative.
        """
        return await self._run(name, self._reload)

    async def _run(
        self,
        name: str,
        operation: Callable[[PluginRecord], Awaitable[TransitionResult]],
    ) -> TransitionResult:
        record = self._records.get(name)
        if record is None:
            raise KeyError(f"Unknown plugin '{name}'")

        if record.lock.locked():
            logger.info("Plugin '%s' is busy; rejecting %s", name, operation.__name__.lstrip("_"))
            return TransitionResult.failure(
                name,
                record.state,
                record.state,
                ErrorKind.BUSY,
                f"Another lifecycle operation is in progress for '{name}'",
            )

        async with record.lock:
            result = await operation(record)
        if not result.success:
            logger.warning(
                "Plugin '%s' %s failed (%s): %s",
                name,
                operation.__name__.lstrip("_"),
                result.kind.value if result.kind else "unknown",
                result.message,
            )
        return result

    async def _validate(self, record: PluginRecord) -> TransitionResult:
        if record.state != LifecycleState.DISCOVERED:
            return self._invalid_state(record, "validate")

        report = await self._run_validator(record.descriptor)
        record.report = report
        if not report.passed:
            return self._fail(record, ErrorKind.VALIDATION_FAILED, report.summary(), report=report)

        self._transition(record, LifecycleState.VALIDATED, "validation passed")
        return TransitionResult.ok(
            record.name, LifecycleState.DISCOVERED, LifecycleState.VALIDATED, report=report
        )

    async def _load(self, record: PluginRecord) -> TransitionResult:
        if record.state != LifecycleState.VALIDATED:
            return self._invalid_state(record, "load")

        problem = self._dependency_problem(record.descriptor)
        if problem:
            return self._fail(record, ErrorKind.DEPENDENCY_UNSATISFIED, problem)

        waiting = self._inactive_dependencies(record.descriptor)
        if waiting:
            return TransitionResult.failure(
                record.name,
                record.state,
                record.state,
                ErrorKind.DEPENDENCY_UNSATISFIED,
                f"Dependencies not active yet: {', '.join(waiting)}",
            )

        options = self.options_for(record.name)
        policy = build_policy(record.descriptor, options)
        try:
            handle = await self._instantiate(record.descriptor, options)
        except Exception as e:
            logger.exception("Loading plugin '%s' failed", record.name)
            return self._fail(record, ErrorKind.LOAD_FAILED, f"Load failed: {e}")

        record.policy = policy
        record.handle = handle
        self._transition(record, LifecycleState.LOADED, f"loaded {record.descriptor.identity}")
        return TransitionResult.ok(record.name, LifecycleState.VALIDATED, LifecycleState.LOADED)

    async def _activate(self, record: PluginRecord) -> TransitionResult:
        if record.state == LifecycleState.ACTIVE:
            return TransitionResult.ok(
                record.name, record.state, record.state, message="already active"
            )
        if record.state != LifecycleState.LOADED:
            return self._invalid_state(record, "activate")

        try:
            await self._start(record)
        except Exception as e:
            logger.exception("Activating plugin '%s' failed", record.name)
            return TransitionResult.failure(
                record.name,
                LifecycleState.LOADED,
                LifecycleState.LOADED,
                ErrorKind.ACTIVATION_FAILED,
                f"Activation failed: {e}",
            )

        self._transition(record, LifecycleState.ACTIVE, "activated")
        return TransitionResult.ok(record.name, LifecycleState.LOADED, LifecycleState.ACTIVE)

    async def _deactivate(self, record: PluginRecord) -> TransitionResult:
        if record.state == LifecycleState.DEACTIVATED:
            return TransitionResult.ok(
                record.name, record.state, record.state, message="already deactivated"
            )
        if record.state != LifecycleState.ACTIVE:
            return self._invalid_state(record, "deactivate")

        # Close the gate before running plugin code
        self._transition(record, LifecycleState.DEACTIVATED, "deactivated")
        await self._stop(record)
        return TransitionResult.ok(record.name, LifecycleState.ACTIVE, LifecycleState.DEACTIVATED)

    async def _unload(self, record: PluginRecord) -> TransitionResult:
        if record.state == LifecycleState.UNLOADED:
            return TransitionResult.ok(
                record.name, record.state, record.state, message="already unloaded"
            )
        if record.state != LifecycleState.DEACTIVATED:
            return self._invalid_state(record, "unload")

        if record.handle is not None:
            await self._discard(record.handle)
            record.handle = None
        self._transition(record, LifecycleState.UNLOADED, "unloaded")
        return TransitionResult.ok(
            record.name, LifecycleState.DEACTIVATED, LifecycleState.UNLOADED
        )

    async def _reload(self, record: PluginRecord) -> TransitionResult:
        old_state = record.state
        if old_state not in (
            LifecycleState.LOADED,
            LifecycleState.ACTIVE,
            LifecycleState.DEACTIVATED,
        ):
            return self._invalid_state(record, "reload")
        if record.handle is None or record.policy is None:
            raise InvalidStateError(f"Plugin '{record.name}' has no loaded instance")

        def refused(message: str, report: ValidationReport | None = None) -> TransitionResult:
            return TransitionResult.failure(
                record.name, old_state, record.state, ErrorKind.RELOAD_FAILED, message, report
            )

        descriptor = self.registry.find(record.name) or record.descriptor

        # Check the new version; nothing has changed until it passes
        report = await self._run_validator(descriptor)
        if not report.passed:
            return refused(f"New version rejected: {report.summary()}", report)

        problem = self._reload_problem(record, descriptor)
        if problem:
            return refused(problem)

        old_handle, old_policy, old_descriptor = record.handle, record.policy, record.descriptor

        async def abort(message: str) -> TransitionResult:
            if old_state == LifecycleState.ACTIVE:
                return await self._roll_back(record, old_state, message)
            return refused(message)

        # Close the gate and stop the running instance before exporting, so
        # no call can change its state after the snapshot is taken
        if old_state == LifecycleState.ACTIVE:
            self._transition(record, LifecycleState.LOADED, f"reloading {descriptor.identity}")
            await self._stop(record)

        try:
            snapshot = await self._call_hook(old_handle, "export_state")
        except Exception as e:
            logger.exception("Exporting state of '%s' failed", record.name)
            return await abort(f"export_state failed: {e}")

        options = self.options_for(record.name)
        new_policy = build_policy(descriptor, options)
        try:
            new_handle = await self._instantiate(descriptor, options)
        except Exception as e:
            logger.exception("Loading new version of '%s' failed", record.name)
            return await abort(f"Load of {descriptor.identity} failed: {e}")
        try:
            await self._call_hook(new_handle, "import_state", snapshot or {})
        except Exception as e:
            logger.exception("Importing state into '%s' failed", record.name)
            await self._discard(new_handle)
            return await abort(f"import_state failed: {e}")

        # Swap
        record.descriptor, record.policy, record.handle = descriptor, new_policy, new_handle
        if self.config.sandbox.reset_violations_on_reload:
            self.sandbox.reset_violation_window(record.name)

        if old_state != LifecycleState.ACTIVE:
            self._transition(
                record,
                LifecycleState.LOADED,
                f"reload {old_descriptor.version} -> {descriptor.version}",
            )
        else:
            try:
                await self._start(record)
            except Exception as e:
                logger.exception("Activating new version of '%s' failed; rolling back", record.name)
                await self._discard(new_handle)
                record.descriptor, record.policy, record.handle = (
                    old_descriptor,
                    old_policy,
                    old_handle,
                )
                return await self._roll_back(
                    record, old_state, f"Activation of {descriptor.identity} failed: {e}"
                )
            self._transition(record, LifecycleState.ACTIVE, f"reloaded {descriptor.identity}")

        await self._discard(old_handle)
        logger.info(
            "Reloaded '%s' %s -> %s", record.name, old_descriptor.version, descriptor.version
        )
        return TransitionResult.ok(
            record.name, old_state, record.state, message=f"reloaded {descriptor.identity}"
        )

    async def _roll_back(
        self, record: PluginRecord, old_state: LifecycleState, message: str
    ) -> TransitionResult:
        """Reactivate the previous instance after a failed reload."""
        try:
            await self._start(record)
        except Exception as e:
            logger.exception("Reactivating previous version of '%s' failed", record.name)
            message = f"{message}; previous version could not be reactivated: {e}"
        else:
            self._transition(
                record, LifecycleState.ACTIVE, f"reload rolled back to {record.descriptor.identity}"
            )
        record.error = message
        record.error_kind = ErrorKind.RELOAD_FAILED
        return TransitionResult.failure(
            record.name, old_state, record.state, ErrorKind.RELOAD_FAILED, message
        )

    # ------------------------------------------------------------------
    # Violations and forced termination
    # ------------------------------------------------------------------

    def _on_violation(self, violation: ViolationRecord) -> None:
        """Record a violation signal from the sandbox on the plugin's record."""
        record = self._records.get(violation.plugin)
        if record is None:
            return
        record.violations.append(violation)
        if violation.kind in RESOURCE_VIOLATIONS:
            logger.info(
                "Plugin '%s' breached its %s limit (observed=%g, limit=%g); "
                "%d violation(s) in the current window",
                violation.plugin,
                violation.kind.value,
                violation.observed,
                violation.limit,
                len(self.sandbox.recent_violations(violation.plugin)),
            )

    def _on_terminate(self, plugin: str, recent: list[ViolationRecord]) -> None:
        if plugin not in self._records:
            return
        task = asyncio.get_running_loop().create_task(
            self._force_fail(plugin, recent), name=f"plugkeep-terminate-{plugin}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _force_fail(self, name: str, recent: list[ViolationRecord]) -> None:
        """Move a plugin to Failed after it reached its violation threshold."""
        record = self._records[name]
        async with record.lock:
            if record.state not in (LifecycleState.ACTIVE, LifecycleState.DEACTIVATED):
                logger.info(
                    "Ignoring termination request for '%s' in state %s", name, record.state.value
                )
                return

            kinds = ", ".join(sorted({r.kind.value for r in recent}))
            reason = f"violation threshold reached ({len(recent)} violations: {kinds})"
            was_active = record.state == LifecycleState.ACTIVE
            record.error = reason
            record.error_kind = ErrorKind.RESOURCE_LIMIT_EXCEEDED
            self._transition(record, LifecycleState.FAILED, reason)

            await self.sandbox.release(name)
            if record.handle is not None:
                if was_active:
                    try:
                        await self._call_hook(record.handle, "deactivate")
                    except Exception:
                        logger.exception("Deactivate hook of terminated plugin '%s' failed", name)
                await self._discard(record.handle)
                record.handle = None

    async def settle(self) -> None:
        """Wait for every pending forced termination to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def start_all(self) -> dict[str, TransitionResult]:
        """Discover, validate, load and activate every plugin.

        Plugins in the same dependency level are loaded and activated
        concurrently; a level starts only after the previous one is Active.

        Returns:
            Final lifecycle result per plugin
        """
        self.discover()
        results: dict[str, TransitionResult] = {}

        names = [r.name for r in self.records() if r.state == LifecycleState.DISCOVERED]
        for result in await asyncio.gather(*(self.validate(n) for n in names)):
            results[result.plugin] = result

        validated = [r.name for r in self.records() if r.state == LifecycleState.VALIDATED]
        graph = self.graph()
        problems = graph.problems()
        for name in validated:
            if name in problems:
                results[name] = await self.load(name)

        for level in graph.levels([n for n in validated if n not in problems]):
            loaded = await asyncio.gather(*(self.load(n) for n in level))
            for result in loaded:
                results[result.plugin] = result
            activated = await asyncio.gather(
                *(self.activate(r.plugin) for r in loaded if r.success)
            )
            for result in activated:
                results[result.plugin] = result

        active = sum(1 for r in self.records() if r.state == LifecycleState.ACTIVE)
        logger.info("Started %d of %d plugins", active, len(self._records))
        return results

    async def shutdown(self) -> None:
        """Deactivate and unload every plugin in reverse dependency order."""
        await self.settle()
        live = [r.name for r in self.records() if r.state not in TERMINAL_STATES]
        ordered = self.graph().load_order(live)
        ordered += [n for n in live if n not in ordered]

        for name in reversed(ordered):
            record = self._records[name]
            if record.state == LifecycleState.ACTIVE:
                await self.deactivate(name)
            if record.state == LifecycleState.DEACTIVATED:
                await self.unload(name)

        await self.settle()
        await self.sandbox.close()
        await self.gateway.close()
        logger.info("Plugin manager shut down")

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------

    async def call(self, name: str, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a public method of an active plugin inside its sandbox scope.

        Raises:
            NotActiveError: If the plugin is not Active
            InvalidRequestError: If the method does not exist or is private
        """
        record = self._records.get(name)
        if record is None or record.state != LifecycleState.ACTIVE or record.handle is None:
            raise NotActiveError(f"Plugin '{name}' is not active")
        if method.startswith("_"):
            raise InvalidRequestError(f"Method '{method}' is private")

        target = getattr(record.handle.plugin, method, None)
        if not callable(target):
            raise InvalidRequestError(f"Plugin '{name}' has no method '{method}'")

        async with self.sandbox.enter(name):
            return await maybe_await(target(*args, **kwargs))

    async def health_check(self, name: str) -> bool:
        """Run a plugin's health check. Non-active plugins are unhealthy."""
        record = self._records.get(name)
        if record is None or record.state != LifecycleState.ACTIVE or record.handle is None:
            return False
        try:
            async with self.sandbox.enter(name):
                return bool(await self._call_hook(record.handle, "health_check"))
        except Exception as e:
            logger.warning("Health check of '%s' failed: %s", name, e)
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, record: PluginRecord, new_state: LifecycleState, reason: str) -> None:
        old_state = record.state
        if not can_transition(old_state, new_state):
            raise InvalidStateError(
                f"Illegal transition for '{record.name}': {old_state.value} -> {new_state.value}"
            )

        record.state = new_state
        if new_state not in TERMINAL_STATES:
            record.error = None
            record.error_kind = None
        event = LifecycleEvent(
            plugin=record.name,
            old_state=old_state,
            new_state=new_state,
            reason=reason,
            policy=record.policy,
        )
        record.history.append(event)
        logger.info(
            "Plugin '%s': %s -> %s (%s)", record.name, old_state.value, new_state.value, reason
        )

        observers = [self.sandbox.on_lifecycle_event, self.gateway.on_lifecycle_event]
        for listener in observers + list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Lifecycle listener failed for %s", record.name)

    def _fail(
        self,
        record: PluginRecord,
        kind: ErrorKind,
        message: str,
        report: ValidationReport | None = None,
    ) -> TransitionResult:
        old_state = record.state
        record.error = message
        record.error_kind = kind
        self._transition(record, LifecycleState.FAILED, f"{kind.value}: {message}")
        return TransitionResult.failure(
            record.name, old_state, LifecycleState.FAILED, kind, message, report
        )

    def _invalid_state(self, record: PluginRecord, operation: str) -> TransitionResult:
        return TransitionResult.failure(
            record.name,
            record.state,
            record.state,
            ErrorKind.INVALID_STATE,
            f"Cannot {operation} '{record.name}' from state {record.state.value}",
        )

    async def _run_validator(self, descriptor: PluginDescriptor) -> ValidationReport:
        try:
            return await asyncio.to_thread(self.validator.validate, descriptor)
        except Exception as e:
            logger.exception("Validator crashed on '%s'", descriptor.name)
            return ValidationReport(plugin=descriptor.name, errors=[f"Validator error: {e}"])

    def _dependency_problem(self, descriptor: PluginDescriptor) -> str | None:
        """Reason why a plugin's dependencies can never be satisfied, if any."""
        graph = self.graph()
        graph.add(descriptor)
        problem = graph.problems().get(descriptor.name)
        if problem:
            return problem

        failed = [
            d
            for d in descriptor.dependency_names
            if self._records[d].state == LifecycleState.FAILED
        ]
        if failed:
            return f"Dependencies failed: {', '.join(failed)}"
        return None

    def _inactive_dependencies(self, descriptor: PluginDescriptor) -> list[str]:
        return [
            d
            for d in descriptor.dependency_names
            if self._records[d].state != LifecycleState.ACTIVE
        ]

    def _reload_problem(self, record: PluginRecord, descriptor: PluginDescriptor) -> str | None:
        problem = self._dependency_problem(descriptor)
        if problem:
            return problem
        if record.state == LifecycleState.ACTIVE:
            waiting = self._inactive_dependencies(descriptor)
            if waiting:
                return f"Dependencies not active: {', '.join(waiting)}"

        for other in self._records.values():
            if other.state in TERMINAL_STATES:
                continue
            for dep in other.descriptor.dependencies:
                if dep.name == record.name and not dep.accepts(descriptor.version):
                    return (
                        f"Dependent '{other.name}' requires {record.name} "
                        f"'{dep.version_range}', not {descriptor.version}"
                    )
        return None

    async def _instantiate(
        self, descriptor: PluginDescriptor, options: PluginOptions
    ) -> PluginInstanceHandle:
        """Import a plugin, bind its context and run its load hook."""
        handle = self.loader.import_plugin(descriptor)
        handle.plugin.bind_context(
            PluginContext(descriptor.name, self.gateway, config=options.config)
        )
        try:
            await self._call_hook(handle, "load", dict(options.config))
        except BaseException:
            self.loader.release(handle)
            raise
        return handle

    async def _start(self, record: PluginRecord) -> None:
        """Establish the sandbox scope and run the activate hook inside it."""
        if record.handle is None or record.policy is None:
            raise InvalidStateError(f"Plugin '{record.name}' has no loaded instance")
        sampler = record.handle.sampler
        if sampler is None and record.handle.plugin.worker_pid:
            sampler = ProcessSampler(record.handle.plugin.worker_pid)

        self.sandbox.establish(record.name, record.policy, sampler)
        try:
            async with self.sandbox.enter(record.name):
                await self._call_hook(record.handle, "activate")
        except BaseException:
            await self.sandbox.release(record.name)
            raise

    async def _stop(self, record: PluginRecord) -> None:
        """Run the deactivate hook in scope, then tear the scope down."""
        if record.handle is None:
            await self.sandbox.release(record.name)
            return
        try:
            if self.sandbox.is_established(record.name):
                async with self.sandbox.enter(record.name):
                    await self._call_hook(record.handle, "deactivate")
            else:
                await self._call_hook(record.handle, "deactivate")
        except Exception:
            logger.exception("Deactivate hook of '%s' failed", record.name)
        finally:
            await self.sandbox.release(record.name)

    async def _discard(self, handle: PluginInstanceHandle) -> None:
        """Run an instance's unload hook and drop its module."""
        try:
            await self._call_hook(handle, "unload")
        except Exception:
            logger.exception("Unload hook of '%s' failed", handle.descriptor.name)
        finally:
            self.loader.release(handle)

    async def _call_hook(self, handle: PluginInstanceHandle, hook: str, *args: Any) -> Any:
        return await asyncio.wait_for(
            maybe_await(getattr(handle.plugin, hook)(*args)), timeout=self.hook_timeout
        )
