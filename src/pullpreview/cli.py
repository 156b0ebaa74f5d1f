"""Pullpreview command line interface."""

import asyncio
import shutil
import subprocess
import sys

import click

from pullpreview import __version__
from pullpreview.config import settings
from pullpreview.managers.container_runtime import ContainerRuntime
from pullpreview.storage.redis_client import RedisClient


@click.group()
@click.version_option(version=__version__, prog_name="pullpreview")
def cli() -> None:
    """Pullpreview - ephemeral preview deployments for pull requests."""
    pass


@cli.command()
@click.option("--host", envvar="PULLPREVIEW_HOST", default="127.0.0.1", help="Bind address")
@click.option("--port", envvar="PULLPREVIEW_PORT", default=8000, type=int, help="Bind port")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the HTTP and Socket.IO server."""
    import uvicorn

    click.echo(
        click.style("Pullpreview ", fg="cyan", bold=True)
        + click.style(f"v{__version__}", fg="cyan")
    )
    click.echo(f"  Listening: http://{host}:{port}")
    click.echo(f"  Host ports: {settings.port_range_min}-{settings.port_range_max}")
    click.echo()

    uvicorn.run(
        "pullpreview.main:socket_app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


def _ok(label: str, detail: str = "") -> None:
    click.echo(click.style(f"  {label}: ", bold=True) + click.style("OK", fg="green") + detail)


def _failed(label: str, detail: str) -> None:
    click.echo(click.style(f"  {label}: ", bold=True) + click.style("FAILED", fg="red") + detail)


async def _redis_reachable(url: str) -> bool:
    client = RedisClient(url)
    await client.connect()
    try:
        return await client.ping()
    finally:
        await client.disconnect()


@cli.command()
def check() -> None:
    """Check that Docker, git and Redis are usable."""
    click.echo(click.style("System Check", fg="cyan", bold=True))
    click.echo()

    all_ok = True

    if asyncio.run(ContainerRuntime().ping()):
        _ok("Docker")
    else:
        _failed("Docker", " (daemon unreachable)")
        all_ok = False

    if shutil.which(settings.docker_binary):
        _ok("Docker CLI", f" ({settings.docker_binary})")
    else:
        _failed("Docker CLI", f" ({settings.docker_binary} not found)")
        all_ok = False

    git_path = shutil.which("git")
    if git_path:
        result = subprocess.run(["git", "--version"], capture_output=True, text=True, timeout=5)
        _ok("git", f" ({result.stdout.strip() or git_path})")
    else:
        _failed("git", " (not found)")
        all_ok = False

    if asyncio.run(_redis_reachable(settings.redis_url)):
        _ok("Redis", f" ({settings.redis_url})")
    else:
        _failed("Redis", f" ({settings.redis_url} unreachable)")
        all_ok = False

    if settings.dockerfile.is_file():
        _ok("Build template", f" ({settings.dockerfile})")
    else:
        _failed("Build template", f" ({settings.dockerfile} missing)")
        all_ok = False

    click.echo()
    if all_ok:
        click.echo(click.style("All checks passed!", fg="green", bold=True))
    else:
        click.echo(click.style("Some checks failed.", fg="red", bold=True))
        sys.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"pullpreview v{__version__}")


if __name__ == "__main__":
    cli()
