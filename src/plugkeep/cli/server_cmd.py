"""Serve command: start every plugin and expose the gateway over HTTP."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from rich.console import Console
from rich.markup import escape

from plugkeep.plugins.lifecycle import LifecycleState, TransitionResult

console = Console()


def _print_results(results: dict[str, TransitionResult]) -> None:
    for name in sorted(results):
        result = results[name]
        if result.success:
            console.print(f"  [green]✓[/green] {name} ({result.to_state.value})")
        else:
            kind = result.kind.value if result.kind else "error"
            console.print(f"  [red]✗[/red] {name} \\[{kind}] {escape(result.message)}")


def serve_command(
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Start all plugins and serve the plugin API gateway.

    Args:
        config_path: Optional path to config file
        host: Bind address override
        port: Port override
    """
    import uvicorn

    from plugkeep.config.loader import load_config
    from plugkeep.gateway.providers import build_providers
    from plugkeep.gateway.server import create_gateway_app
    from plugkeep.plugins.manager import PluginManager

    path = Path(config_path) if config_path else None
    try:
        config = load_config(path)
    except Exception as e:
        console.print(f"[red]Failed to load config: {escape(str(e))}[/red]")
        return

    manager = PluginManager.from_config(config)
    for capability, provider in build_providers(config.gateway).items():
        manager.gateway.bind_provider(capability, provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        results = await manager.start_all()
        console.print(f"[bold]Started plugins[/bold] ({len(results)} discovered)")
        _print_results(results)
        try:
            yield
        finally:
            await manager.shutdown()

    app = create_gateway_app(
        manager.gateway,
        active_plugins=lambda: [
            r.name for r in manager.records() if r.state == LifecycleState.ACTIVE
        ],
        lifespan=lifespan,
    )

    bind_host = host or config.gateway.host
    bind_port = port or config.gateway.port
    console.print(f"[green]Starting plugkeep gateway on {bind_host}:{bind_port}[/green]")
    console.print("\nPress Ctrl+C to stop")
    uvicorn.run(app, host=bind_host, port=bind_port, log_level="info")
