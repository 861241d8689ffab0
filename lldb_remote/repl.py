"""Interactive shell driving one Session.

Reads commands via prompt_toolkit, dispatches them to Session operations and
prints the results with Rich. Unsolicited stop notifications are drained and
shown after every command.
"""

import shlex

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import HTML
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .address import Address
from .display import format_address, format_reply, format_stop_reply, format_threads
from .errors import LLDBRemoteError
from .history import get_history
from .protocol import Reply, parse_stop_reply, stop_payload
from .session import RegisterStateToken, Session

console = Console()

# Sentinel return value for the shell loop
QUIT = object()

SHELL_HELP: dict[str, str] = {
    "threads": "List threads of the target.",
    "create": "create <path> [args...]  Launch a target.",
    "attach": "attach <name>  Attach to a running process by name.",
    "run": "Start the created target.",
    "continue": "Resume the target after a stop.",
    "interrupt": "Stop the running target.",
    "wait": "wait [seconds]  Wait for the next stop reply.",
    "detach": "Detach from the target.",
    "alloc": "alloc <size> [perms]  Allocate memory (perms from 'rwx').",
    "write": "write <addr> <hex bytes>  Write bytes at a hex address.",
    "save": "Save the register state; prints a token.",
    "restore": "restore <token>  Restore a saved register state.",
    "stdout": "stdout <path>  Redirect target stdout (before create).",
    "stdin": "stdin <path>  Redirect target stdin (before create).",
    "stderr": "stderr <path>  Redirect target stderr (before create).",
    "env": "env NAME=VALUE...  Set target environment (before create).",
    "help": "Show this help.",
    "quit": "Close the session and exit.",
}


def run_shell(session: Session) -> None:
    """Run the interactive shell until quit or Ctrl-D, then close the session."""
    prompt_session: PromptSession = PromptSession(history=get_history())
    completer = WordCompleter(list(SHELL_HELP), sentence=True)

    try:
        while True:
            try:
                line = prompt_session.prompt(_prompt(session), completer=completer)
            except EOFError:
                console.print("\nGoodbye")
                break
            except KeyboardInterrupt:
                continue

            result = handle_line(session, line)
            if result is QUIT:
                console.print("Goodbye")
                break
            if result is not None:
                console.print(result)

            for text in drain_notifications(session):
                console.print(text)
    finally:
        session.close()


def handle_line(session: Session, line: str) -> str | Table | object | None:
    """Dispatch one shell line.

    Returns:
        - Markup string or Table to display.
        - QUIT to end the shell.
        - None for blank input.
    """
    try:
        parts = shlex.split(line)
    except ValueError as exc:
        return f"[red]Error:[/red] {escape(str(exc))}"
    if not parts:
        return None

    cmd, args = parts[0].lower(), parts[1:]
    if cmd == "quit":
        return QUIT
    if cmd == "help":
        return _help_table()

    handler = _HANDLERS.get(cmd)
    if handler is None:
        return f"[red]Unknown command: {escape(cmd)}[/red]"

    try:
        return handler(session, args)
    except (LLDBRemoteError, ValueError) as exc:
        return f"[red]Error:[/red] {escape(str(exc))}"


def drain_notifications(session: Session) -> list[str]:
    """Format unsolicited packets for display; errors become a red line."""
    try:
        replies = session.drain_notifications()
    except LLDBRemoteError as exc:
        return [f"[red]Error:[/red] {escape(str(exc))}"]
    return [_format_notification(reply) for reply in replies]


def _prompt(session: Session) -> HTML:
    if session.target:
        return HTML(f"<style fg='ansigray'>[{_html_escape(session.target)}]</style> <b>&gt;</b> ")
    return HTML("<style fg='ansigray'>[no target]</style> <b>&gt;</b> ")


def _html_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _help_table() -> Table:
    table = Table(title="Commands", show_header=False)
    table.add_column("Command", style="bold")
    table.add_column("Description")
    for name, text in SHELL_HELP.items():
        table.add_row(name, escape(text))
    return table


def _format_notification(reply: Reply) -> str:
    payload = stop_payload(reply)
    if payload is not None:
        try:
            return format_stop_reply(parse_stop_reply(payload))
        except LLDBRemoteError:
            pass
    return format_reply(reply)


def _usage(cmd: str) -> ValueError:
    return ValueError(f"Usage: {SHELL_HELP[cmd].split('  ')[0]}")


# --- Command handlers ---


def _threads(session: Session, args: list[str]) -> Table:
    return format_threads(session.get_threads())


def _create(session: Session, args: list[str]) -> str:
    if not args:
        raise _usage("create")
    session.create(args[0], *args[1:])
    return f"Created [bold]{escape(args[0])}[/bold]"


def _attach(session: Session, args: list[str]) -> str:
    if len(args) != 1:
        raise _usage("attach")
    session.attach(args[0])
    return f"Attached to [bold]{escape(args[0])}[/bold]"


def _run(session: Session, args: list[str]) -> str:
    return format_stop_reply(session.run())


def _continue(session: Session, args: list[str]) -> str:
    return format_stop_reply(session.continue_())


def _interrupt(session: Session, args: list[str]) -> str:
    return format_reply(session.interrupt())


def _wait(session: Session, args: list[str]) -> str:
    timeout = float(args[0]) if args else None
    return format_stop_reply(session.wait_for_stop(timeout))


def _detach(session: Session, args: list[str]) -> str:
    session.detach()
    return "Detached"


def _alloc(session: Session, args: list[str]) -> str:
    if not 1 <= len(args) <= 2:
        raise _usage("alloc")
    size = int(args[0], 0)
    permissions = args[1] if len(args) > 1 else "rwx"
    return f"Allocated {size} bytes at {format_address(session.allocate(size, permissions))}"


def _write(session: Session, args: list[str]) -> str:
    if len(args) < 2:
        raise _usage("write")
    address = Address.from_hex(args[0].removeprefix("0x"))
    data = bytes.fromhex("".join(args[1:]))
    session.write_at_address(address, data)
    return f"Wrote {len(data)} bytes at {format_address(address)}"


def _save(session: Session, args: list[str]) -> str:
    return f"Register state saved: [bold]{escape(str(session.save_registers()))}[/bold]"


def _restore(session: Session, args: list[str]) -> str:
    if len(args) != 1:
        raise _usage("restore")
    session.restore_registers(RegisterStateToken(args[0]))
    return "Register state restored"


def _stdio(stream: str):
    def handler(session: Session, args: list[str]) -> str:
        if len(args) != 1:
            raise _usage(stream)
        getattr(session, f"set_{stream}")(args[0])
        return f"{stream} -> {escape(args[0])}"

    return handler


def _env(session: Session, args: list[str]) -> str:
    if not args:
        raise _usage("env")
    env: dict[str, str] = {}
    for item in args:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got {item!r}")
        env[name] = value
    session.set_env(env)
    return f"Set {len(env)} environment variable(s)"


_HANDLERS = {
    "threads": _threads,
    "create": _create,
    "attach": _attach,
    "run": _run,
    "continue": _continue,
    "interrupt": _interrupt,
    "wait": _wait,
    "detach": _detach,
    "alloc": _alloc,
    "write": _write,
    "save": _save,
    "restore": _restore,
    "stdout": _stdio("stdout"),
    "stdin": _stdio("stdin"),
    "stderr": _stdio("stderr"),
    "env": _env,
}
