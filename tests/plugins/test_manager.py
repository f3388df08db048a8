"""Tests for the plugin manager."""

import asyncio
import logging

import pytest

from plugkeep.config.schema import PluginOptions
from plugkeep.errors import InvalidRequestError, NotActiveError
from plugkeep.gateway.providers import CallableProvider
from plugkeep.plugins.base import Plugin
from plugkeep.plugins.lifecycle import LifecycleState
from plugkeep.protocol import ErrorKind
from plugkeep.security.monitor import ViolationKind
from plugkeep.security.sandbox import current_scope

S = LifecycleState


class CallerPlugin(Plugin):
    """Calls host capabilities through its context."""

    async def ask(self, capability: str, method: str = "get", **payload):
        return await self.context.call(capability, method, payload)

    def scoped(self):
        scope = current_scope()
        return scope.plugin if scope else None

    def hog(self, memory_mb: float):
        return self.context.account_memory(memory_mb)

    def _secret(self):
        return "hidden"


class GatedPlugin(Plugin):
    """Blocks in activate() until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def activate(self):
        self.entered.set()
        await self.release.wait()


class BrokenActivate(Plugin):
    async def activate(self):
        raise RuntimeError("cannot start")


class SlowLoad(Plugin):
    async def load(self, config):
        await asyncio.sleep(10)


def recorder(name, log):
    class Recorded(Plugin):
        async def activate(self):
            log.append(("activate", name))

        async def deactivate(self):
            log.append(("deactivate", name))

    return Recorded


@pytest.mark.asyncio
async def test_full_lifecycle(manager, add_plugin, counter_cls):
    add_plugin(manager, "counter", counter_cls, options=PluginOptions(config={"start": 5}))

    validated = await manager.validate("counter")
    loaded = await manager.load("counter")
    activated = await manager.activate("counter")

    assert validated.success and validated.to_state == S.VALIDATED
    assert loaded.success and loaded.to_state == S.LOADED
    assert activated.success and activated.to_state == S.ACTIVE

    plugin = manager.record("counter").handle.plugin
    assert plugin.count == 5
    assert await manager.call("counter", "increment") == 6

    assert (await manager.deactivate("counter")).to_state == S.DEACTIVATED
    assert (await manager.unload("counter")).to_state == S.UNLOADED
    assert plugin.calls == ["load", "activate", "deactivate", "unload"]
    assert [e.new_state for e in manager.record("counter").history] == [
        S.VALIDATED,
        S.LOADED,
        S.ACTIVE,
        S.DEACTIVATED,
        S.UNLOADED,
    ]


@pytest.mark.asyncio
async def test_listeners_receive_events_in_order(manager, add_plugin, counter_cls, start_plugin):
    events = []
    unsubscribe = manager.subscribe(events.append)
    add_plugin(manager, "counter", counter_cls)

    await start_plugin(manager, "counter")
    unsubscribe()
    await manager.deactivate("counter")

    assert [(e.old_state, e.new_state) for e in events] == [
        (S.DISCOVERED, S.VALIDATED),
        (S.VALIDATED, S.LOADED),
        (S.LOADED, S.ACTIVE),
    ]
    assert events[-1].policy is not None
    await manager.shutdown()


@pytest.mark.asyncio
async def test_validation_failure(manager, add_plugin, counter_cls):
    add_plugin(manager, "bad", counter_cls, permissions=["memory.read", "shell.exec"])

    result = await manager.validate("bad")

    assert not result.success
    assert result.kind == ErrorKind.VALIDATION_FAILED
    assert result.to_state == S.FAILED
    assert "Unknown permission 'shell.exec'" in result.report.errors
    assert manager.record("bad").error_kind == ErrorKind.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_wrong_state_is_rejected_without_transition(manager, add_plugin, counter_cls):
    add_plugin(manager, "counter", counter_cls)

    result = await manager.activate("counter")

    assert result.kind == ErrorKind.INVALID_STATE
    assert manager.state("counter") == S.DISCOVERED
    assert manager.record("counter").history == []


@pytest.mark.asyncio
async def test_unknown_plugin_raises(manager):
    with pytest.raises(KeyError):
        await manager.validate("ghost")


@pytest.mark.asyncio
async def test_deactivate_and_unload_are_idempotent(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "counter", counter_cls)
    await start_plugin(manager, "counter")

    assert (await manager.unload("counter")).kind == ErrorKind.INVALID_STATE

    first = await manager.deactivate("counter")
    second = await manager.deactivate("counter")
    assert first.success and second.success
    assert second.message == "already deactivated"
    assert len(manager.record("counter").history) == 4

    assert (await manager.unload("counter")).success
    assert (await manager.unload("counter")).message == "already unloaded"


@pytest.mark.asyncio
async def test_activate_is_idempotent(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "counter", counter_cls)
    await start_plugin(manager, "counter")

    result = await manager.activate("counter")

    assert result.success and result.message == "already active"
    assert manager.record("counter").handle.plugin.calls == ["load", "activate"]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_concurrent_operation_is_busy(manager, add_plugin):
    add_plugin(manager, "gated", GatedPlugin)
    await manager.validate("gated")
    await manager.load("gated")
    plugin = manager.record("gated").handle.plugin

    activation = asyncio.create_task(manager.activate("gated"))
    await plugin.entered.wait()

    busy = await manager.deactivate("gated")
    assert not busy.success
    assert busy.kind == ErrorKind.BUSY
    assert busy.from_state == busy.to_state == S.LOADED

    plugin.release.set()
    assert (await activation).success
    assert manager.state("gated") == S.ACTIVE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_different_plugins_run_concurrently(manager, add_plugin, counter_cls):
    add_plugin(manager, "gated", GatedPlugin)
    add_plugin(manager, "counter", counter_cls)
    await manager.validate("gated")
    await manager.load("gated")
    plugin = manager.record("gated").handle.plugin

    activation = asyncio.create_task(manager.activate("gated"))
    await plugin.entered.wait()

    assert (await manager.validate("counter")).success

    plugin.release.set()
    await activation
    await manager.shutdown()


@pytest.mark.asyncio
async def test_activation_failure_leaves_plugin_loaded(manager, add_plugin):
    add_plugin(manager, "broken", BrokenActivate)
    await manager.validate("broken")
    await manager.load("broken")

    result = await manager.activate("broken")

    assert result.kind == ErrorKind.ACTIVATION_FAILED
    assert "cannot start" in result.message
    assert manager.state("broken") == S.LOADED
    assert not manager.sandbox.is_established("broken")
    assert not manager.gateway.is_bound("broken")


@pytest.mark.asyncio
async def test_hook_timeout_fails_load(manager, add_plugin):
    manager.hook_timeout = 0.05
    add_plugin(manager, "slow", SlowLoad)
    await manager.validate("slow")

    result = await manager.load("slow")

    assert result.kind == ErrorKind.LOAD_FAILED
    assert manager.state("slow") == S.FAILED


@pytest.mark.asyncio
async def test_load_waits_for_active_dependencies(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "lib", counter_cls)
    add_plugin(manager, "app", counter_cls, dependencies={"lib": "^1.0"})
    await manager.validate("lib")
    await manager.validate("app")

    early = await manager.load("app")

    assert early.kind == ErrorKind.DEPENDENCY_UNSATISFIED
    assert manager.state("app") == S.VALIDATED

    await manager.load("lib")
    await manager.activate("lib")
    assert (await manager.load("app")).success
    await manager.shutdown()


@pytest.mark.asyncio
async def test_missing_dependency_fails(manager, add_plugin, counter_cls):
    add_plugin(manager, "app", counter_cls, dependencies=["ghost"])
    await manager.validate("app")

    result = await manager.load("app")

    assert result.kind == ErrorKind.DEPENDENCY_UNSATISFIED
    assert manager.state("app") == S.FAILED
    assert "ghost" in manager.record("app").error


@pytest.mark.asyncio
async def test_version_mismatch_fails(manager, add_plugin, counter_cls):
    add_plugin(manager, "lib", counter_cls, version="1.0.0")
    add_plugin(manager, "app", counter_cls, dependencies={"lib": ">=2.0"})
    await manager.validate("app")

    result = await manager.load("app")

    assert result.kind == ErrorKind.DEPENDENCY_UNSATISFIED
    assert manager.state("app") == S.FAILED


@pytest.mark.asyncio
async def test_circular_dependencies_fail_both(manager, add_plugin, counter_cls):
    add_plugin(manager, "a", counter_cls, dependencies=["b"])
    add_plugin(manager, "b", counter_cls, dependencies=["a"])

    results = await manager.start_all()

    for name in ("a", "b"):
        assert manager.state(name) == S.FAILED
        assert results[name].kind == ErrorKind.DEPENDENCY_UNSATISFIED
        assert "Circular dependency" in manager.record(name).error


@pytest.mark.asyncio
async def test_failed_dependency_fails_dependent(manager, add_plugin, counter_cls):
    add_plugin(manager, "lib", counter_cls, permissions=["bogus.perm"])
    add_plugin(manager, "app", counter_cls, dependencies=["lib"])

    await manager.start_all()

    assert manager.state("lib") == S.FAILED
    assert manager.state("app") == S.FAILED
    assert manager.record("app").error_kind == ErrorKind.DEPENDENCY_UNSATISFIED


@pytest.mark.asyncio
async def test_start_all_respects_dependency_order(manager, add_plugin):
    log = []
    add_plugin(manager, "app", recorder("app", log), dependencies=["cache", "db"])
    add_plugin(manager, "cache", recorder("cache", log), dependencies=["db"])
    add_plugin(manager, "db", recorder("db", log))

    results = await manager.start_all()

    assert all(r.success for r in results.values())
    assert log == [("activate", "db"), ("activate", "cache"), ("activate", "app")]

    await manager.shutdown()

    assert log[3:] == [("deactivate", "app"), ("deactivate", "cache"), ("deactivate", "db")]
    assert all(r.state == S.UNLOADED for r in manager.records())


@pytest.mark.asyncio
async def test_start_all_skips_disabled(manager, add_plugin, counter_cls):
    add_plugin(manager, "off", counter_cls, options=PluginOptions(enabled=False))
    add_plugin(manager, "on", counter_cls)

    await manager.start_all()

    assert manager.record("off") is None
    assert manager.state("on") == S.ACTIVE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_discover_replaces_terminal_records(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "counter", counter_cls)
    await start_plugin(manager, "counter")
    await manager.deactivate("counter")
    await manager.unload("counter")

    assert manager.discover() == ["counter"]
    assert manager.state("counter") == S.DISCOVERED
    assert manager.discover() == []


@pytest.mark.asyncio
async def test_gateway_open_only_while_active(manager, add_plugin, start_plugin):
    manager.gateway.bind_provider("memory.read", CallableProvider({"get": lambda p: p["key"]}))
    add_plugin(manager, "caller", CallerPlugin, permissions=["memory.read"])
    await start_plugin(manager, "caller")
    plugin = manager.record("caller").handle.plugin

    response = await manager.call("caller", "ask", "memory.read", key="k")
    assert response.success and response.payload == "k"

    await manager.deactivate("caller")
    response = await plugin.ask("memory.read", key="k")
    assert response.error_kind == ErrorKind.NOT_ACTIVE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_repeated_denials_force_failure(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "rogue", CallerPlugin, permissions=["memory.read"])
    add_plugin(manager, "bystander", counter_cls)
    await start_plugin(manager, "rogue")
    await start_plugin(manager, "bystander")

    for _ in range(3):
        response = await manager.call("rogue", "ask", "task.create", "create")
        assert response.error_kind == ErrorKind.PERMISSION_DENIED
    await manager.settle()

    record = manager.record("rogue")
    assert record.state == S.FAILED
    assert record.error_kind == ErrorKind.RESOURCE_LIMIT_EXCEEDED
    assert record.handle is None
    assert not manager.gateway.is_bound("rogue")
    assert not manager.sandbox.is_established("rogue")
    assert [v.kind for v in manager.violations("rogue")] == [ViolationKind.PERMISSION] * 3

    assert manager.state("bystander") == S.ACTIVE
    assert await manager.call("bystander", "increment") == 1

    with pytest.raises(NotActiveError):
        await manager.call("rogue", "ask", "memory.read")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_resource_breach_recorded_on_call(manager, add_plugin, start_plugin):
    add_plugin(
        manager,
        "hungry",
        CallerPlugin,
        options=PluginOptions(maxMemoryMb=10, violationThreshold=5),
    )
    await start_plugin(manager, "hungry")

    assert await manager.call("hungry", "hog", 50) is True

    violations = manager.violations("hungry")
    assert [v.kind for v in violations] == [ViolationKind.MEMORY]
    assert violations[0].observed == 50
    assert manager.state("hungry") == S.ACTIVE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_transient_memory_spike_counts_once(manager, add_plugin, start_plugin):
    manager.sandbox.sample_interval = 0.01
    add_plugin(
        manager,
        "spiky",
        CallerPlugin,
        options=PluginOptions(maxMemoryMb=10, violationThreshold=5),
    )
    await start_plugin(manager, "spiky")

    await manager.call("spiky", "hog", 50)
    await manager.call("spiky", "hog", 1)
    await asyncio.sleep(0.2)
    await manager.settle()

    assert [v.kind for v in manager.violations("spiky")] == [ViolationKind.MEMORY]
    assert manager.state("spiky") == S.ACTIVE
    await manager.shutdown()


@pytest.mark.asyncio
async def test_breach_signal_recorded_on_plugin_record(manager, add_plugin, start_plugin, caplog):
    add_plugin(
        manager,
        "hungry",
        CallerPlugin,
        options=PluginOptions(maxMemoryMb=10, violationThreshold=5),
    )
    await start_plugin(manager, "hungry")

    with caplog.at_level(logging.INFO, logger="plugkeep.plugins.manager"):
        await manager.call("hungry", "hog", 50)

    record = manager.record("hungry")
    assert [v.kind for v in record.violations] == [ViolationKind.MEMORY]
    assert record.to_dict()["violations"] == 1
    assert record.state == S.ACTIVE
    assert "breached its memory limit" in caplog.text
    await manager.shutdown()


@pytest.mark.asyncio
async def test_call_runs_in_scope_and_checks_method(manager, add_plugin, start_plugin):
    add_plugin(manager, "caller", CallerPlugin)

    with pytest.raises(NotActiveError):
        await manager.call("caller", "scoped")

    await start_plugin(manager, "caller")

    assert await manager.call("caller", "scoped") == "caller"
    with pytest.raises(InvalidRequestError):
        await manager.call("caller", "_secret")
    with pytest.raises(InvalidRequestError):
        await manager.call("caller", "missing")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_health_check(manager, add_plugin, counter_cls, start_plugin):
    add_plugin(manager, "counter", counter_cls)

    assert await manager.health_check("counter") is False

    await start_plugin(manager, "counter")
    assert await manager.health_check("counter") is True
    await manager.shutdown()
