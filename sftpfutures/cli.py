"""Command line interface for sftpfutures.

Configures logging, builds an :class:`SFTPClient` from a saved profile or
from ``--host``/``--user``/``--port``, and runs one operation.

Usage::

    sftpfutures --host example.org --user me ls /home/me
    sftpfutures --profile prod get /var/log/syslog ./syslog
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from sftpfutures import ConnectConfig, SFTPClient

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"
_RESULT_TIMEOUT = 300  # seconds

app = typer.Typer(help="Run one SFTP operation against a remote host.")
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


@app.callback()
def main(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Remote host"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Remote username"),
    port: int = typer.Option(22, "--port", "-P", help="SSH port"),
    key: Optional[str] = typer.Option(None, "--key", "-i", help="Private key file"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Saved profile name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    _configure_logging(verbose)
    ctx.obj = {"host": host, "user": user, "port": port, "key": key, "profile": profile}


def _client(ctx: typer.Context) -> SFTPClient:
    """Build the client described by the global options."""
    opts = ctx.obj
    if opts["profile"]:
        return SFTPClient.from_profile(opts["profile"])
    if not opts["host"]:
        raise typer.BadParameter("either --host or --profile is required")
    config = ConnectConfig(
        host=opts["host"],
        port=opts["port"],
        username=opts["user"],
        key_path=opts["key"],
        auth_type="key" if opts["key"] else "agent",
    )
    return SFTPClient(config)


def _wait(future):
    try:
        return future.result(timeout=_RESULT_TIMEOUT)
    except Exception as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1) from exc


@app.command()
def ls(ctx: typer.Context, path: str = typer.Argument(".", help="Remote path")) -> None:
    """List a remote directory or describe a file."""
    result = _wait(_client(ctx).ls(path))
    if result["type"] == "directory":
        for entry in sorted(result["entries"], key=lambda e: e["filename"]):
            typer.echo(entry["longname"] or entry["filename"])
    else:
        typer.echo(f"{result['path']}  {result['type']}  {result['attrs']['size']}")


@app.command()
def stat(ctx: typer.Context, path: str) -> None:
    """Print the attributes of a remote path as JSON."""
    typer.echo(json.dumps(_wait(_client(ctx).stat(path)), indent=2, default=str))


@app.command()
def get(ctx: typer.Context, remote: str, local: Path) -> None:
    """Download a remote file."""
    _wait(_client(ctx).get(remote, local))


@app.command()
def put(ctx: typer.Context, local: Path, remote: str) -> None:
    """Upload a local file."""
    if not local.is_file():
        raise typer.BadParameter(f"{local} is not a file")
    _wait(_client(ctx).put(local, remote))


@app.command()
def rm(ctx: typer.Context, path: str) -> None:
    """Remove a remote file."""
    _wait(_client(ctx).rm(path))


@app.command()
def mkdir(
    ctx: typer.Context,
    path: str,
    parents: bool = typer.Option(False, "--parents", "-p", help="Create missing parents"),
) -> None:
    """Create a remote directory."""
    client = _client(ctx)
    _wait(client.mkdirp(path) if parents else client.mkdir(path))


@app.command()
def pwd(ctx: typer.Context) -> None:
    """Print the remote working directory."""
    typer.echo(_wait(_client(ctx).pwd()))


if __name__ == "__main__":
    app()
