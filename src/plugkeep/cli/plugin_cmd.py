"""CLI commands for plugin management."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from plugkeep.config.schema import PlugkeepConfig

console = Console()


def _load(config_path: str | None) -> PlugkeepConfig:
    from plugkeep.config.loader import load_config

    return load_config(Path(config_path) if config_path else None)


def _discover(config: PlugkeepConfig):
    from plugkeep.plugins.loader import PluginLoader

    loader = PluginLoader(
        plugin_dir=config.plugins.plugin_dir,
        blocked=config.plugins.blocked,
        entry_point_group=config.plugins.entry_point_group,
    )
    return loader, loader.discover_all()


def list_plugins(config_path: str | None = None) -> None:
    """List all discovered plugins."""
    config = _load(config_path)
    loader, descriptors = _discover(config)

    if not descriptors:
        console.print("[dim]No plugins found.[/dim]")
        console.print(f"Drop .py files in {config.plugins.plugin_dir} or install via pip.")
        return

    errors = loader.errors
    table = Table(title="Installed Plugins")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Source")
    table.add_column("Permissions", style="green")
    table.add_column("Dependencies")
    table.add_column("Status")

    for descriptor in descriptors:
        if descriptor.name in errors:
            status = f"[red]error: {escape(errors[descriptor.name][:40])}[/red]"
        elif not config.options_for(descriptor.name).enabled:
            status = "[yellow]disabled[/yellow]"
        else:
            status = "[green]enabled[/green]"
        table.add_row(
            descriptor.name,
            descriptor.version,
            descriptor.source,
            ", ".join(sorted(p.value for p in descriptor.permissions)) or "-",
            ", ".join(str(d) for d in descriptor.dependencies) or "-",
            status,
        )

    console.print(table)


def info_plugin(name: str, config_path: str | None = None) -> bool:
    """Show detailed info about a plugin."""
    from plugkeep.security.policy import build_policy

    config = _load(config_path)
    _, descriptors = _discover(config)
    descriptor = next((d for d in descriptors if d.name == name), None)
    if descriptor is None:
        console.print(f"[red]Plugin '{name}' not found.[/red]")
        return False

    console.print(f"\n[bold cyan]{descriptor.name}[/bold cyan] v{descriptor.version}")
    if descriptor.description:
        console.print(f"  {descriptor.description}")
    if descriptor.author:
        console.print(f"  Author: {descriptor.author}")
    console.print(f"  Source: {descriptor.source} ({descriptor.location})")
    if descriptor.capabilities:
        console.print(f"  Provides: {', '.join(sorted(descriptor.capabilities))}")
    if descriptor.dependencies:
        console.print(f"  Depends on: {', '.join(str(d) for d in descriptor.dependencies)}")

    options = config.options_for(name)
    policy = build_policy(descriptor, options)
    console.print("  Permissions:")
    console.print(f"    Requested: {', '.join(sorted(c.value for c in policy.requested)) or 'none'}")
    console.print(f"    Granted: {', '.join(sorted(c.value for c in policy.granted)) or 'none'}")
    if descriptor.unknown_permissions:
        console.print(f"    [red]Unknown: {', '.join(descriptor.unknown_permissions)}[/red]")
    console.print("  Limits:")
    console.print(f"    Memory: {policy.max_memory_mb:g} MB")
    console.print(f"    CPU time: {policy.max_cpu_seconds:g} s")
    console.print(f"    Network requests/window: {policy.max_network_requests_per_window}")
    console.print(
        f"    Network destinations: "
        f"{', '.join(sorted(policy.allowed_network_destinations)) or 'none'}"
    )
    console.print(f"    Rate limit: {policy.rate_limit_per_minute}/min")
    console.print(f"    Violation threshold: {policy.violation_threshold}")
    return True


def validate_plugin(name: str, config_path: str | None = None) -> bool:
    """Validate a plugin without loading it.

    Returns:
        True if validation passed
    """
    from plugkeep.plugins.validator import PluginValidator

    config = _load(config_path)
    _, descriptors = _discover(config)
    descriptor = next((d for d in descriptors if d.name == name), None)
    if descriptor is None:
        console.print(f"[red]Plugin '{name}' not found.[/red]")
        return False

    report = PluginValidator().validate(descriptor)
    for error in report.errors:
        console.print(f"  [red]✗[/red] {escape(error)}")
    for warning in report.warnings:
        console.print(f"  [yellow]![/yellow] {escape(warning)}")

    if report.passed:
        console.print(f"[green]Plugin '{name}' passed validation.[/green]")
    else:
        console.print(f"[red]Plugin '{name}' failed validation ({len(report.errors)} errors).[/red]")
    return report.passed


def show_dependencies(config_path: str | None = None) -> bool:
    """Show the load order and any unsatisfiable dependencies.

    Returns:
        True if every plugin can be loaded
    """
    from plugkeep.plugins.dependencies import DependencyGraph

    config = _load(config_path)
    _, descriptors = _discover(config)
    graph = DependencyGraph(descriptors)

    table = Table(title="Load Order")
    table.add_column("Level", justify="right")
    table.add_column("Plugins", style="cyan")
    for i, level in enumerate(graph.levels(), start=1):
        table.add_row(str(i), ", ".join(level))
    console.print(table)

    problems = graph.problems()
    for name, reason in sorted(problems.items()):
        console.print(f"  [red]✗ {name}[/red]: {escape(reason)}")
    return not problems
