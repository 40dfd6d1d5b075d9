"""Feedback Relay CLI - run a broker or watch for feedback requests."""

import asyncio
import os
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from feedback_relay import __version__
from feedback_relay.config import ENV_LOG_LEVEL, RelayConfig, validate_config
from feedback_relay.logging import setup_logging

# stdout carries the MCP session when running as a broker
console = Console(stderr=True)


def _load_config(config_path: Optional[str]) -> RelayConfig:
    """Configure logging, load the config, then apply its logging settings."""
    setup_logging(os.environ.get(ENV_LOG_LEVEL, "INFO"))
    config = RelayConfig.load(config_path)
    setup_logging(
        config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.json_logs,
    )
    return config


@click.group()
@click.version_option(version=__version__)
def cli():
    """Feedback Relay - ask the human from inside an AI tool call"""
    pass


@cli.command()
@click.option("--config-path", "-c", type=click.Path(), help="Path to config file")
def broker(config_path: str = None):
    """Run a broker as an MCP stdio server.

    Point your AI client's MCP configuration at this command. The broker
    also listens on the first free loopback port at or above the base port
    so editor pollers can find it.

    Example:
        feedback-relay broker
    """
    from feedback_relay.broker import run_broker

    config = _load_config(config_path)
    reason = asyncio.run(run_broker(config))
    console.print(f"[dim]Broker stopped: {reason}[/dim]")


@cli.command()
@click.option(
    "--workspace",
    "-w",
    "workspaces",
    multiple=True,
    type=click.Path(exists=True, file_okay=False),
    help="Workspace folder (repeatable; default: current directory)",
)
@click.option("--config-path", "-c", type=click.Path(), help="Path to config file")
def watch(workspaces: tuple, config_path: str = None):
    """Watch for feedback requests and answer them in the terminal.

    Prefix a word with @ to attach a path, e.g. "looks good @src/app.py".

    Examples:

        feedback-relay watch

        feedback-relay watch -w ~/code/api -w ~/code/web
    """
    from feedback_relay.poller import ConsoleHost, ConsoleSession, DiscoveryPoller

    config = _load_config(config_path)
    host = ConsoleHost(list(workspaces) or [os.getcwd()], console=Console())

    last_port = config.port_range.stop - 1
    host.console.print(
        Panel(
            f"[bold blue]Workspace:[/] {', '.join(host.workspaces)}\n"
            f"[bold blue]Ports:[/] {config.base_port}-{last_port}",
            title="Feedback Relay",
        )
    )

    async def execute():
        poller = DiscoveryPoller(host, config)
        await ConsoleSession(poller, host).run()

    try:
        asyncio.run(execute())
    except KeyboardInterrupt:
        host.console.print("\n[dim]Stopped watching[/dim]")


@cli.command()
@click.option("--config-path", "-c", type=click.Path(), help="Path to config file")
def status(config_path: str = None):
    """List brokers answering on the scanned ports."""
    from feedback_relay.poller import BrokerClient

    config = _load_config(config_path)

    async def collect():
        async with BrokerClient(config) as client:
            ports = list(config.port_range)
            health = await asyncio.gather(*(client.health(port) for port in ports))
            snapshots = await asyncio.gather(*(client.fetch_current(port) for port in ports))
        return [
            (port, h, s)
            for port, h, s in zip(ports, health, snapshots)
            if h is not None or s is not None
        ]

    found = asyncio.run(collect())
    out = Console()

    if not found:
        out.print(
            f"[yellow]No brokers on ports {config.base_port}-{config.port_range.stop - 1}[/]"
        )
        return

    table = Table(title="Brokers")
    table.add_column("Port", style="cyan")
    table.add_column("PID")
    table.add_column("Version")
    table.add_column("Workspace")
    table.add_column("Pending request")

    for port, health, snapshot in found:
        health = health or {}
        request = snapshot.request if snapshot else None
        owner = snapshot.owner_workspace if snapshot else None
        table.add_row(
            str(port),
            str(health.get("pid", "-")),
            str(health.get("version", "-")),
            owner or "[dim](unclaimed)[/dim]",
            request.id if request else "[dim]none[/dim]",
        )

    out.print(table)


@cli.command()
@click.argument("port", type=int)
@click.option("--config-path", "-c", type=click.Path(), help="Path to config file")
def stop(port: int, config_path: str = None):
    """Ask the broker on PORT to shut down.

    Waiting tool calls on that broker answer with the cancellation text.
    """
    from feedback_relay.poller import BrokerClient

    config = _load_config(config_path)

    async def request():
        async with BrokerClient(config) as client:
            return await client.request_shutdown(port)

    out = Console()
    if asyncio.run(request()):
        out.print(f"[green]✓ Broker on port {port} is shutting down[/]")
    else:
        out.print(f"[red]✗ No broker answered on port {port}[/]")
        raise SystemExit(1)


@cli.command("config")
@click.option("--config-path", "-c", type=click.Path(), help="Path to config file")
@click.option("--save", "save_path", type=click.Path(), help="Write the effective config to a TOML file")
def show_config(config_path: str = None, save_path: str = None):
    """Show the effective configuration and any warnings."""
    config = _load_config(config_path)
    out = Console()

    table = Table(title="Effective configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.model_dump().items():
        table.add_row(key, "-" if value is None else str(value))
    out.print(table)

    warnings = validate_config(config)
    if warnings:
        out.print("\n[yellow]Warnings:[/]")
        for warning in warnings:
            out.print(f"  ⚠ {warning}")
    else:
        out.print("\n[green]✓ Configuration OK[/]")

    if save_path:
        config.save(save_path)
        out.print(f"[dim]Saved to {save_path}[/dim]")


if __name__ == "__main__":
    cli()
