"""Rich formatting for threads, stop replies, addresses and raw replies."""

from collections.abc import Mapping
from typing import Any

from rich.markup import escape
from rich.table import Table

from .address import Address
from .protocol import Reply, ReplyKind, StopReply

_STOP_COLORS = {
    "signal": "yellow",
    "exited": "green",
    "terminated": "red",
}


def format_threads(threads: Mapping[str, Any]) -> Table:
    """Build a table with one row per thread.

    Entries that are JSON objects contribute their ``name`` and ``reason``
    fields; any other value is shown as-is in the name column.
    """
    table = Table(title="Threads", show_lines=False)
    table.add_column("TID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Stop reason", style="yellow")

    for tid, info in threads.items():
        if isinstance(info, Mapping):
            name = str(info.get("name", ""))
            reason = str(info.get("reason", ""))
        else:
            name = str(info)
            reason = ""
        table.add_row(str(tid), name, reason)
    return table


def format_stop_reply(stop: StopReply | None) -> str:
    """Describe a stop reply as Rich markup."""
    if stop is None:
        return "[dim]Target resumed (no stop reply)[/dim]"

    color = _STOP_COLORS.get(stop.kind, "white")
    match stop.kind:
        case "exited":
            text = f"[{color}]Target exited with status {stop.code}[/{color}]"
        case "terminated":
            text = f"[{color}]Target terminated by signal {stop.code}[/{color}]"
        case _:
            text = f"[{color}]Stopped with signal {stop.code}[/{color}]"

    if stop.thread_id:
        text += f" [dim]thread {stop.thread_id}[/dim]"
    reason = stop.fields.get("reason")
    if reason:
        text += f" [dim]({escape(reason)})[/dim]"
    return text


def format_address(address: Address) -> str:
    return f"[bold cyan]0x{address}[/bold cyan]"


def format_reply(reply: Reply) -> str:
    """Describe a classified reply as Rich markup."""
    match reply.kind:
        case ReplyKind.ACK:
            return "[dim]ack[/dim]"
        case ReplyKind.ERROR:
            return f"[red]Error E{reply.error_code or 0:02X}[/red] {escape(reply.error_message)}".rstrip()
        case ReplyKind.NOTIFICATION:
            return f"[magenta]Notification:[/magenta] {escape(reply.payload)}"
        case _:
            return escape(reply.payload) if reply.payload else "[dim](empty)[/dim]"
