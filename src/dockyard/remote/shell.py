"""Shell quoting helpers for commands sent to remote hosts.

Every value interpolated into a remote command (database names,
credentials, file paths, URLs) goes through :func:`quote`; there is no
"trusted input" path.
"""

from __future__ import annotations

import shlex


def quote(value: object) -> str:
    """Quote *value* for a POSIX shell (``shlex.quote`` on its string form)."""
    return shlex.quote(str(value))


def join_commands(*commands: str) -> str:
    """Chain commands with ``&&`` so the first failure stops the chain."""
    return " && ".join(c for c in commands if c)


def bounded_wait(check: str, *, timeout_seconds: int, interval_seconds: int = 1) -> str:
    """Build a remote polling loop: ``timeout N bash -c 'until CHECK; do sleep I; done'``.

    The wait happens on the remote host; the worker only waits for the
    command to return.
    """
    loop = f"until {check}; do sleep {interval_seconds}; done"
    return f"timeout {int(timeout_seconds)} bash -c {quote(loop)}"


__all__ = ["quote", "join_commands", "bounded_wait"]
