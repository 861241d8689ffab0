"""History file for the interactive shell.

Uses prompt_toolkit's FileHistory so commands persist across sessions in
~/.lldb_remote_history.
"""

import os

from prompt_toolkit.history import FileHistory

HISTORY_PATH = os.path.expanduser("~/.lldb_remote_history")


def get_history(path: str = HISTORY_PATH) -> FileHistory:
    """Return a FileHistory instance for the shell."""
    return FileHistory(path)
