"""Tests for shell dispatch, prompt generation and notification display."""

from unittest.mock import MagicMock

from prompt_toolkit.formatted_text import HTML
from rich.table import Table

from lldb_remote.address import Address
from lldb_remote.errors import ProtocolError, RemoteError, TargetStateError
from lldb_remote.protocol import Reply, ReplyKind, StopReply
from lldb_remote.repl import (
    QUIT,
    SHELL_HELP,
    _format_notification,
    _prompt,
    drain_notifications,
    handle_line,
)
from lldb_remote.session import RegisterStateToken


def _session(target: str = "") -> MagicMock:
    session = MagicMock()
    session.target = target
    return session


class TestHandleLine:
    def test_blank(self):
        assert handle_line(_session(), "   ") is None

    def test_quit(self):
        assert handle_line(_session(), "quit") is QUIT

    def test_help_lists_every_command(self):
        table = handle_line(_session(), "help")
        assert isinstance(table, Table)
        assert table.row_count == len(SHELL_HELP)

    def test_unknown(self):
        result = handle_line(_session(), "frobnicate")
        assert "Unknown command: frobnicate" in result

    def test_bad_quoting(self):
        assert "Error" in handle_line(_session(), 'create "/bin/ls')

    def test_commands_are_case_insensitive(self):
        session = _session()
        handle_line(session, "DETACH")
        session.detach.assert_called_once_with()


class TestHandlers:
    def test_create_with_args(self):
        session = _session()
        result = handle_line(session, "create /bin/ls -l '/tmp/a b'")
        session.create.assert_called_once_with("/bin/ls", "-l", "/tmp/a b")
        assert "/bin/ls" in result

    def test_create_usage(self):
        result = handle_line(_session(), "create")
        assert "Usage: create <path>" in result

    def test_attach(self):
        session = _session()
        handle_line(session, "attach server")
        session.attach.assert_called_once_with("server")

    def test_run(self):
        session = _session("/bin/ls")
        session.run.return_value = StopReply("exited", 0)
        assert "exited with status 0" in handle_line(session, "run")

    def test_continue(self):
        session = _session("/bin/ls")
        session.continue_.return_value = None
        assert "no stop reply" in handle_line(session, "continue")

    def test_interrupt(self):
        session = _session()
        session.interrupt.return_value = Reply(ReplyKind.PAYLOAD, "OK")
        assert handle_line(session, "interrupt") == "OK"

    def test_wait_with_timeout(self):
        session = _session()
        session.wait_for_stop.return_value = StopReply("signal", 2)
        handle_line(session, "wait 1.5")
        session.wait_for_stop.assert_called_once_with(1.5)

    def test_alloc(self):
        session = _session()
        session.allocate.return_value = Address(0x2000)
        result = handle_line(session, "alloc 0x10 rw")
        session.allocate.assert_called_once_with(16, "rw")
        assert "0x2000" in result

    def test_alloc_default_permissions(self):
        session = _session()
        session.allocate.return_value = Address(0x10)
        handle_line(session, "alloc 64")
        session.allocate.assert_called_once_with(64, "rwx")

    def test_write(self):
        session = _session()
        result = handle_line(session, "write 0x2000 90 90 c3")
        session.write_at_address.assert_called_once_with(Address(0x2000), b"\x90\x90\xc3")
        assert "Wrote 3 bytes" in result

    def test_write_bad_hex(self):
        assert "Error" in handle_line(_session(), "write 2000 zz")

    def test_save_and_restore(self):
        session = _session("/bin/ls")
        session.save_registers.return_value = RegisterStateToken("4")
        assert "4" in handle_line(session, "save")
        handle_line(session, "restore 4")
        session.restore_registers.assert_called_once_with(RegisterStateToken("4"))

    def test_stdio(self):
        session = _session()
        handle_line(session, "stdout /tmp/out")
        handle_line(session, "stdin /dev/null")
        handle_line(session, "stderr /tmp/err")
        session.set_stdout.assert_called_once_with("/tmp/out")
        session.set_stdin.assert_called_once_with("/dev/null")
        session.set_stderr.assert_called_once_with("/tmp/err")

    def test_env(self):
        session = _session()
        result = handle_line(session, "env A=1 B=x=y")
        session.set_env.assert_called_once_with({"A": "1", "B": "x=y"})
        assert "2 environment" in result

    def test_env_bad_entry(self):
        session = _session()
        assert "Expected NAME=VALUE" in handle_line(session, "env NOEQUALS")
        session.set_env.assert_not_called()

    def test_threads(self):
        session = _session()
        session.get_threads.return_value = {"1": {"name": "main"}}
        assert isinstance(handle_line(session, "threads"), Table)

    def test_remote_error_reported(self):
        session = _session()
        session.get_threads.side_effect = RemoteError(1)
        assert "E01" in handle_line(session, "threads")

    def test_state_error_reported(self):
        session = _session()
        session.run.side_effect = TargetStateError("Cannot run; no target created or attached")
        assert "no target" in handle_line(session, "run")


class TestPrompt:
    def test_no_target(self):
        prompt = _prompt(_session())
        assert isinstance(prompt, HTML)
        assert "no target" in prompt.value

    def test_target_escaped(self):
        prompt = _prompt(_session("/tmp/<x>"))
        assert "&lt;x&gt;" in prompt.value


class TestNotifications:
    def test_stop_notification(self):
        text = _format_notification(Reply(ReplyKind.NOTIFICATION, "Stop:W01"))
        assert "exited with status 1" in text

    def test_other_notification(self):
        text = _format_notification(Reply(ReplyKind.NOTIFICATION, "Other"))
        assert "Notification" in text

    def test_late_stop_reply_packet(self):
        text = _format_notification(Reply(ReplyKind.PAYLOAD, "T05thread:2;"))
        assert "thread 2" in text

    def test_drain_formats_each_reply(self):
        session = _session()
        session.drain_notifications.return_value = [
            Reply(ReplyKind.NOTIFICATION, "Stop:S05"),
            Reply(ReplyKind.NOTIFICATION, "Other"),
        ]
        lines = drain_notifications(session)
        assert len(lines) == 2
        assert "signal 5" in lines[0]

    def test_drain_error_reported_not_raised(self):
        session = _session()
        session.drain_notifications.side_effect = ProtocolError("Trailing bytes after packet")
        assert drain_notifications(session) == ["[red]Error:[/red] Trailing bytes after packet"]


class TestHistory:
    def test_file_history_at_path(self, tmp_path):
        from prompt_toolkit.history import FileHistory

        from lldb_remote.history import get_history

        history = get_history(str(tmp_path / "hist"))
        assert isinstance(history, FileHistory)
        history.store_string("threads")
        assert "threads" in (tmp_path / "hist").read_text()
