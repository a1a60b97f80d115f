"""Remote execution: shell commands on managed servers over ssh."""

from dockyard.remote.executor import (
    CommandResult,
    LocalExecutor,
    RemoteExecutor,
    SshExecutor,
    run_all,
    run_checked,
)
from dockyard.remote.shell import bounded_wait, join_commands, quote

__all__ = [
    "CommandResult",
    "LocalExecutor",
    "RemoteExecutor",
    "SshExecutor",
    "run_all",
    "run_checked",
    "bounded_wait",
    "join_commands",
    "quote",
]
