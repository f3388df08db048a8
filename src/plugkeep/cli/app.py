"""Main CLI application using Typer."""

import sys

import typer
from rich.console import Console

from plugkeep import __version__

# Create Typer app
app = typer.Typer(
    name="plugkeep",
    help="plugkeep - Sandboxed plugin host with a permission-checked API gateway",
    no_args_is_help=True,
)

console = Console()

CONFIG_OPTION_HELP = "Path to config file (default: ~/.plugkeep/plugkeep.yaml)"


@app.command()
def version():
    """Show plugkeep version."""
    console.print(f"plugkeep version {__version__}")


@app.command()
def serve(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
    host: str = typer.Option(None, "--host", help="Bind address"),
    port: int = typer.Option(None, "--port", "-p", help="Port"),
):
    """Start all plugins and serve the plugin API gateway."""
    from plugkeep.cli.server_cmd import serve_command

    serve_command(config_path=config_path, host=host, port=port)


# Plugin commands
plugin_app = typer.Typer(help="Manage plugkeep plugins")
app.add_typer(plugin_app, name="plugin")


@plugin_app.command("list")
def plugin_list(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """List all discovered plugins."""
    from plugkeep.cli.plugin_cmd import list_plugins

    list_plugins(config_path=config_path)


@plugin_app.command("info")
def plugin_info(
    name: str = typer.Argument(..., help="Plugin name"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Show detailed information about a plugin."""
    from plugkeep.cli.plugin_cmd import info_plugin

    if not info_plugin(name, config_path=config_path):
        raise typer.Exit(1)


@plugin_app.command("validate")
def plugin_validate(
    name: str = typer.Argument(..., help="Plugin name"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Run structural and security checks on a plugin without loading it."""
    from plugkeep.cli.plugin_cmd import validate_plugin

    if not validate_plugin(name, config_path=config_path):
        raise typer.Exit(1)


@plugin_app.command("deps")
def plugin_deps(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Show plugin load order and unsatisfiable dependencies."""
    from plugkeep.cli.plugin_cmd import show_dependencies

    if not show_dependencies(config_path=config_path):
        raise typer.Exit(1)


def main():
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
