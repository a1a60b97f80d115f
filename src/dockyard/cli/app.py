"""
Root Typer application for the ``dockyard`` CLI.

Operator helpers around the job core: inspect Dockerfile stages, preview
the health probe a deployment would install, convert byte sizes the way
the pipelines log them, and print the Celery worker command line.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from dockyard import __version__
from dockyard.core.errors import ValidationError
from dockyard.core.formatting import convert_to_bytes, format_bytes
from dockyard.deploy.dockerfile import normalize_dockerfile_location, parse_stages
from dockyard.deploy.healthcheck import build_probe
from dockyard.deploy.models import Application, BuildPack

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="dockyard",
    help="dockyard: job and orchestration core of the control plane.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
dockerfile_app = typer.Typer(no_args_is_help=True)
bytes_app = typer.Typer(no_args_is_help=True)


# ── Version ──────────────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dockyard {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """dockyard CLI: Dockerfile, probe and worker helpers."""


@app.command("version")
def version() -> None:
    """Print the installed version."""
    typer.echo(f"dockyard {__version__}")


# ── Dockerfile ───────────────────────────────────────────────────────────


@dockerfile_app.command("stages")
def dockerfile_stages(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Dockerfile to inspect"),
) -> None:
    """List the build stages of a Dockerfile.

    Example::

        dockyard dockerfile stages ./Dockerfile
    """
    stages = parse_stages(path.read_text())
    if not stages:
        err_console.print(f"[red]No FROM instruction found in {path}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=str(path))
    table.add_column("#", justify="right")
    table.add_column("Line", justify="right")
    table.add_column("Image")
    table.add_column("Name")
    for index, stage in enumerate(stages):
        table.add_row(str(index), str(stage.line + 1), stage.image, stage.name or "-")
    console.print(table)
    if len(stages) > 1:
        console.print(f"Multi-stage build; final stage: [bold]{stages[-1].name or stages[-1].image}[/bold]")


@dockerfile_app.command("normalize")
def dockerfile_normalize(
    location: str = typer.Argument(..., help="Dockerfile location as configured"),
    base_directory: str = typer.Option("/", "--base-directory", "-b", help="Application base directory"),
) -> None:
    """Strip the base directory from a Dockerfile location."""
    typer.echo(normalize_dockerfile_location(base_directory, location))


# ── Health probe ─────────────────────────────────────────────────────────


@app.command("probe")
def probe(
    exposes: str = typer.Option("3000", "--exposes", help="Exposed ports, comma separated"),
    port: str | None = typer.Option(None, "--port", help="Explicit health check port"),
    path: str = typer.Option("/", "--path"),
    method: str = typer.Option("GET", "--method"),
    scheme: str = typer.Option("http", "--scheme"),
    host: str = typer.Option("localhost", "--host"),
    static: bool = typer.Option(False, "--static", help="Static build pack (always port 80)"),
) -> None:
    """Show the health probe a deployment would install."""
    application = Application(
        ports_exposes=exposes,
        health_check_port=port,
        health_check_path=path,
        health_check_method=method,
        health_check_scheme=scheme,
        health_check_host=host,
        build_pack=BuildPack.STATIC if static else BuildPack.NIXPACKS,
    )
    try:
        health_probe = build_probe(application)
    except ValidationError as exc:
        err_console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[bold]{health_probe.display}[/bold]")
    console.print(health_probe.command(), markup=False, highlight=False)


# ── Byte sizes ───────────────────────────────────────────────────────────


@bytes_app.command("format")
def bytes_format(
    value: int = typer.Argument(..., min=0, help="Size in bytes"),
    precision: int = typer.Option(2, "--precision", "-p"),
) -> None:
    """Render a byte count the way backup logs do (``1.5 MB``)."""
    typer.echo(format_bytes(value, precision))


@bytes_app.command("parse")
def bytes_parse(
    value: str = typer.Argument(..., help='Size such as "1 KB", "2.5GiB" or "512MB"'),
    si: bool = typer.Option(False, "--si", help="Powers of 1000 instead of 1024"),
) -> None:
    """Convert a human-readable size to bytes."""
    parsed = convert_to_bytes(value, si=si)
    if parsed == 0 and not value.strip().startswith("0"):
        err_console.print(f"[red]Unrecognised size: {value}[/red]")
        raise typer.Exit(code=1)
    typer.echo(str(parsed))


# ── Worker ───────────────────────────────────────────────────────────────


@app.command("worker")
def worker(
    queues: str = typer.Option("high,default,low", "--queues", "-Q", help="Queues to consume, by priority"),
    concurrency: int = typer.Option(4, "--concurrency", "-c", min=1),
    loglevel: str = typer.Option("INFO", "--loglevel", "-l"),
) -> None:
    """Print the Celery worker command line for this package.

    Example::

        $(dockyard worker -Q high,default -c 8)
    """
    typer.echo(
        f"celery -A dockyard.execution.tasks worker -Q {queues} "
        f"--concurrency {concurrency} --prefetch-multiplier 1 --loglevel {loglevel}"
    )


app.add_typer(dockerfile_app, name="dockerfile", help="Dockerfile inspection.")
app.add_typer(bytes_app, name="bytes", help="Byte size conversion.")


if __name__ == "__main__":
    app()
