"""Click CLI entry point for lldb-remote.

Handles option parsing, connects a Session, and runs one command or hands
off to the interactive shell.
"""

import logging
import sys

import click
from rich.console import Console

from . import __version__
from .connection import ConnectionConfig
from .display import format_address, format_stop_reply, format_threads
from .errors import LLDBRemoteError, RemoteConnectionError, RemoteTimeoutError
from .protocol import DEFAULT_READ_TIMEOUT, ChecksumMode, PacketCodec, SizeRadix
from .session import Session

console = Console()


@click.group()
@click.option("--host", default="127.0.0.1", show_default=True, envvar="LLDB_REMOTE_HOST",
              help="Host running lldb-server or gdbserver.")
@click.option("--port", type=int, required=True, envvar="LLDB_REMOTE_PORT",
              help="Port the stub listens on.")
@click.option("--timeout", type=float, default=DEFAULT_READ_TIMEOUT, show_default=True,
              envvar="LLDB_REMOTE_TIMEOUT", help="Seconds to wait for each reply.")
@click.option("--placeholder-checksum", is_flag=True, default=False,
              envvar="LLDB_REMOTE_PLACEHOLDER_CHECKSUM",
              help="Send '00' instead of real checksums (stubs that skip validation).")
@click.option("--size-radix", type=click.Choice([r.value for r in SizeRadix]),
              default=SizeRadix.HEX.value, show_default=True, envvar="LLDB_REMOTE_SIZE_RADIX",
              help="Radix of allocation sizes and write byte counts on the wire.")
@click.option("--verbose", "-v", is_flag=True, default=False, envvar="LLDB_REMOTE_VERBOSE",
              help="Log every packet sent and received.")
@click.version_option(version=__version__, prog_name="lldb-remote")
@click.pass_context
def cli(
    ctx: click.Context,
    host: str,
    port: int,
    timeout: float,
    placeholder_checksum: bool,
    size_radix: str,
    verbose: bool,
) -> None:
    """Drive a remote lldb-server / gdbserver stub."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    mode = ChecksumMode.PLACEHOLDER if placeholder_checksum else ChecksumMode.COMPUTED
    ctx.obj = {
        "host": host,
        "port": port,
        "config": ConnectionConfig(read_timeout=timeout),
        "codec": PacketCodec(checksum_mode=mode),
        "size_radix": SizeRadix(size_radix),
    }


@cli.command()
@click.pass_obj
def threads(obj: dict) -> None:
    """Print the threads of the current target."""
    with _open_session(obj) as session:
        _run_or_exit(lambda: console.print(format_threads(session.get_threads())))


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("path")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--stdout", "stdout_path", default=None, help="Redirect target stdout.")
@click.option("--stdin", "stdin_path", default=None, help="Redirect target stdin.")
@click.option("--stderr", "stderr_path", default=None, help="Redirect target stderr.")
@click.option("--env", "env_items", multiple=True, metavar="NAME=VALUE",
              help="Environment entry for the target (repeatable).")
@click.pass_obj
def launch(
    obj: dict,
    path: str,
    args: tuple[str, ...],
    stdout_path: str | None,
    stdin_path: str | None,
    stderr_path: str | None,
    env_items: tuple[str, ...],
) -> None:
    """Create PATH with ARGS on the remote host and run it."""
    env = _parse_env(env_items)

    def _launch(session: Session) -> None:
        if stdout_path:
            session.set_stdout(stdout_path)
        if stdin_path:
            session.set_stdin(stdin_path)
        if stderr_path:
            session.set_stderr(stderr_path)
        if env:
            session.set_env(env)
        session.create(path, *args)
        console.print(format_stop_reply(session.run()))

    with _open_session(obj) as session:
        _run_or_exit(lambda: _launch(session))


@cli.command()
@click.argument("name")
@click.pass_obj
def attach(obj: dict, name: str) -> None:
    """Attach to process NAME, print its threads, then detach."""

    def _attach(session: Session) -> None:
        session.attach(name)
        console.print(format_threads(session.get_threads()))

    with _open_session(obj) as session:
        _run_or_exit(lambda: _attach(session))


@cli.command()
@click.argument("size", type=int)
@click.argument("permissions", default="rwx")
@click.pass_obj
def alloc(obj: dict, size: int, permissions: str) -> None:
    """Allocate SIZE bytes with PERMISSIONS (from 'rwx')."""
    with _open_session(obj) as session:
        _run_or_exit(
            lambda: console.print(format_address(session.allocate(size, permissions)))
        )


@cli.command()
@click.pass_obj
def shell(obj: dict) -> None:
    """Open an interactive shell on the stub."""
    from .repl import run_shell

    session = _open_session(obj)
    console.print(
        f"[bold]lldb-remote[/bold] {__version__} connected to {obj['host']}:{obj['port']}"
    )
    console.print("[dim]Type help for commands, quit to exit[/dim]")
    run_shell(session)


def _open_session(obj: dict) -> Session:
    """Connect to the stub, exiting on failure."""
    try:
        return Session.connect(
            obj["host"],
            obj["port"],
            config=obj["config"],
            codec=obj["codec"],
            size_radix=obj["size_radix"],
        )
    except (RemoteConnectionError, RemoteTimeoutError) as exc:
        console.print(f"[red]Connection failed:[/red] {exc}")
        sys.exit(1)


def _run_or_exit(action) -> None:
    try:
        action()
    except LLDBRemoteError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)


def _parse_env(items: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--env")
        env[name] = value
    return env


if __name__ == "__main__":
    cli()
