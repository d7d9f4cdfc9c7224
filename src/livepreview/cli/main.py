#!/usr/bin/env python3
"""
Live Preview CLI - Command Line Interface for preview sessions

Usage:
    livepreview start FILE [--port PORT] [--no-reload] [--debug]   # Preview a file
    livepreview doctor [PATH] [--port PORT] [--format FORMAT]      # Check the environment
    livepreview listen URL [--max-attempts N]                      # Follow reload broadcasts
    livepreview generate FILE [--port PORT] [--output PATH]        # Print the server program

Examples:
    livepreview start site/index.html --port 8080
    livepreview doctor site/
    livepreview listen http://localhost:8000/
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..clients.reload import ReloadListener
from ..core.config import PreviewConfig
from ..core.diagnostics import SystemCheckReport, run_system_check
from ..core.resolver import is_previewable, resolve_root
from ..core.schemas import ConnectionStatus
from ..core.supervisor import PreviewSupervisor
from ..dev.generator import generate_server_source
from ..exceptions.base import ConfigurationError, LivePreviewError
from ..utils.logging import setup_logging

console = Console()

CLI_VERSION = __version__

STATUS_STYLES = {
    ConnectionStatus.CONNECTED: ("🟢", "green"),
    ConnectionStatus.DISCONNECTED: ("🟡", "yellow"),
    ConnectionStatus.ERROR: ("🔴", "red"),
    ConnectionStatus.UNKNOWN: ("⚪", "dim"),
}


def load_config(config_path: Optional[str]) -> PreviewConfig:
    """Configuration from a YAML file when given, else from the environment"""
    if config_path:
        return PreviewConfig.from_file(config_path)
    return PreviewConfig.from_env()


@click.group()
@click.version_option(version=CLI_VERSION)
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="YAML file with a 'livepreview' section")
@click.option("--log-level", "-l", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Log level (default: LIVE_PREVIEW_LOG_LEVEL or INFO)")
@click.pass_context
def cli(ctx, config_path, log_level):
    """Live Preview - static site preview with automatic browser reload"""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Error loading configuration: {e.message}[/red]")
        sys.exit(1)

    if log_level:
        config = config.update(log_level=log_level.upper())

    setup_logging(config.log_level, console=True)
    ctx.obj["config"] = config


@cli.command("start")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--port", "-p", type=int, default=None, help="Preview server port")
@click.option("--no-reload", is_flag=True, help="Do not watch files for host-side refreshes")
@click.option("--debug", is_flag=True, help="Enable debug logging and the lifecycle report")
@click.pass_context
def start_preview(ctx, file, port, no_reload, debug):
    """Preview FILE until interrupted"""
    config: PreviewConfig = ctx.obj["config"]

    overrides = {}
    if port is not None:
        overrides["port"] = port
    if no_reload:
        overrides["auto_reload"] = False
    if debug:
        overrides.update(debug_mode=True, log_level="DEBUG")

    try:
        config = config.update(**overrides) if overrides else config
    except ConfigurationError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(2)

    if debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if not is_previewable(file):
        console.print(f"[yellow]⚠️ {Path(file).name} is not a previewable file type; serving its directory[/yellow]")

    console.print(f"🚀 Starting Live Preview for [bold blue]{file}[/bold blue] on port {config.port}")
    if not config.auto_reload:
        console.print("[dim]Host-side refresh disabled[/dim]")

    try:
        asyncio.run(run_session(file, config))
    except LivePreviewError as e:
        console.print(f"[red]Live Preview failed: {e.message}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n👋 Live Preview stopped")


async def run_session(file_path: str, config: PreviewConfig):
    """Run one session until the server exits or the task is cancelled"""

    def on_status(status: ConnectionStatus):
        icon, style = STATUS_STYLES[status]
        console.print(f"{icon} Browser connection: [{style}]{status.value}[/{style}]")

    supervisor = PreviewSupervisor(
        config,
        on_output_line=lambda line: console.print(line, markup=False, highlight=False),
        on_connection_status=on_status,
        on_preview_url=lambda url: console.print(f"🌐 Preview: [link={url}]{url}[/link]")
    )

    try:
        try:
            session = await supervisor.start(file_path)
        except LivePreviewError:
            if supervisor.lifecycle is not None:
                console.print(Panel(
                    supervisor.lifecycle.generate_report(),
                    title="Lifecycle report",
                    border_style="red"
                ))
            raise

        if config.debug_mode and supervisor.lifecycle is not None:
            console.print(Panel(supervisor.lifecycle.generate_report(), title="Lifecycle report"))

        await session.stopped.wait()
        if session.error:
            console.print(f"[red]{session.error}[/red]")
            if session.error_detail and session.error_detail != session.error:
                console.print(f"[dim]{session.error_detail}[/dim]")
    finally:
        await supervisor.shutdown()


@cli.command("doctor")
@click.argument("path", required=False, type=click.Path(file_okay=False))
@click.option("--port", "-p", type=int, default=None, help="Port to check")
@click.option("--format", "-f", "output_format", default="table", type=click.Choice(["table", "json"]))
@click.pass_context
def doctor(ctx, path, port, output_format):
    """Check that a preview session can start"""
    config: PreviewConfig = ctx.obj["config"]
    port = port or config.port

    report = asyncio.run(run_system_check(path, port, config.runtime))

    if output_format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print(render_report(report))
        if report.ok:
            console.print("✅ Ready to preview")
        else:
            for problem in report.problems:
                console.print(f"  ❌ {problem}")

    if not report.ok:
        sys.exit(1)


def render_report(report: SystemCheckReport) -> Table:
    """Rich table for a system check"""
    table = Table(title="Live Preview System Check")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Details", style="dim")

    def mark(ok: bool) -> str:
        return "[green]ok[/green]" if ok else "[red]failed[/red]"

    table.add_row("Python runtime", mark(report.runtime_installed), report.runtime_version or report.runtime)
    table.add_row("Port", mark(not report.port_in_use),
                  f"{report.port} {'in use' if report.port_in_use else 'free'}")
    table.add_row("File system access", mark(report.file_system_access), report.project_path or "temp dir")
    if report.project_structure is not None:
        table.add_row("Project structure", mark(report.project_structure != "invalid"), report.project_structure)

    return table


@cli.command("listen")
@click.argument("url")
@click.option("--max-attempts", "-n", type=int, default=None,
              help="Give up after this many consecutive connection failures")
def listen(url, max_attempts):
    """Print every reload broadcast by the preview server at URL"""

    def on_reload():
        console.print(f"🔄 reload #{listener.reloads}")

    try:
        listener = ReloadListener(url, on_reload, max_attempts=max_attempts)
    except LivePreviewError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(2)

    console.print(f"👂 Listening on [blue]{listener.url}[/blue]")
    try:
        asyncio.run(listener.run())
    except LivePreviewError as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print(f"\n👋 Stopped after {listener.reloads} reloads")


@cli.command("generate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--port", "-p", type=int, default=None, help="Default port baked into the program")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to this file instead of stdout")
@click.pass_context
def generate(ctx, file, port, output):
    """Print the preview server program generated for FILE"""
    config: PreviewConfig = ctx.obj["config"]
    root = resolve_root(file, max_depth=config.max_root_depth)
    source = generate_server_source(file, root, port or config.port)

    if not source:
        console.print(f"[yellow]{Path(file).name} starts its own server; it would be run directly[/yellow]")
        return

    if output:
        Path(output).write_text(source, encoding="utf-8")
        console.print(f"✅ Server program written to [green]{output}[/green] (root: {root})")
    else:
        click.echo(source, nl=False)


def main():
    """Entry point for the CLI"""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n👋 Goodbye!")
        sys.exit(0)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
