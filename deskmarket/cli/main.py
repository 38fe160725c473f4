"""CLI main entry point"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from deskmarket import __version__
from deskmarket.config import load_settings
from deskmarket.core.marketplace.coordinator import InstallRequest
from deskmarket.core.marketplace.exceptions import MarketplaceError
from deskmarket.core.marketplace.models import JobStatus, ScanLevel
from deskmarket.core.marketplace.scanner import SecurityScanner
from deskmarket.core.marketplace.service import MarketplaceService
from deskmarket.core.marketplace.validator import validate_manifest

console = Console()

LEVEL_CHOICE = click.Choice([level.value for level in ScanLevel])


@click.group()
@click.version_option(version=__version__, prog_name="deskmarket")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="YAML settings file")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
@click.pass_context
def cli(ctx, config_path, log_level):
    """deskmarket - web desktop marketplace installer"""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level.lower()


@cli.command()
@click.option("--host", default=None, help="Bind host (default from settings)")
@click.option("--port", default=None, type=int, help="Bind port (default from settings)")
@click.pass_context
def serve(ctx, host, port):
    """Run the marketplace HTTP API"""
    import uvicorn

    from deskmarket.webui.app import create_app

    settings = load_settings(ctx.obj["config_path"])
    host = host or settings.host
    port = port or settings.port

    click.echo(f"Starting marketplace API at http://{host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level=ctx.obj["log_level"])


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--level", default="standard", type=LEVEL_CHOICE, help="Scan level")
def scan(directory, level):
    """Security-scan an extracted app directory"""
    result = SecurityScanner().scan(directory, level)

    table = Table(title=f"Security scan ({result.scan_level.value})")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Files scanned", str(result.files_scanned))
    table.add_row("Files skipped", str(result.files_skipped))
    table.add_row("Duration", f"{result.scan_duration:.2f}s")
    table.add_row("Truncated", "yes" if result.truncated else "no")
    console.print(table)

    if result.safe:
        console.print("[green]✓ No threats found[/green]")
        return

    for threat in result.threats:
        console.print(f"[red]✗ {threat}[/red]")
    sys.exit(1)


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(manifest):
    """Validate a manifest.json file"""
    try:
        with open(manifest, encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as e:
        console.print(f"[red]✗ Not valid JSON: {e}[/red]")
        sys.exit(1)

    result = validate_manifest(data)
    if result.valid:
        console.print(f"[green]✓ {manifest} is valid[/green]")
        return

    for error in result.errors:
        console.print(f"[red]✗ {error}[/red]")
    sys.exit(1)


@cli.command()
@click.argument("url")
@click.option("--level", default=None, type=LEVEL_CHOICE, help="Scan level (default from settings)")
@click.pass_context
def install(ctx, url, level):
    """Install an app package from URL and wait for the result"""
    settings = load_settings(ctx.obj["config_path"])
    try:
        status, message = asyncio.run(_install(MarketplaceService(settings), url, level))
    except MarketplaceError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if status == JobStatus.COMPLETED:
        console.print(f"[green]✓ {message}[/green]")
    else:
        console.print(f"[red]✗ {message}[/red]")
        sys.exit(1)


async def _install(service: MarketplaceService, url: str, level):
    service.settings.ensure_directories()
    job = service.coordinator.start_install(
        InstallRequest(url=url, scan_level=ScanLevel(level) if level else None)
    )

    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task_id = progress.add_task("Queued", total=100)
        while not job.status.is_terminal:
            progress.update(task_id, completed=job.progress.progress, description=job.progress.current_step)
            await asyncio.sleep(0.2)
        progress.update(task_id, completed=job.progress.progress, description=job.progress.current_step)

    await service.coordinator.wait(job.session_id)
    return job.status, job.progress.message


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
