"""Tests for dockyard.remote.shell."""

import shlex

import pytest

from dockyard.remote.shell import bounded_wait, join_commands, quote


class TestQuote:
    @pytest.mark.parametrize("value", ["orders", "it's", "a b", "$(rm -rf /)", "x;y", ""])
    def test_quoted_values_split_back_to_one_token(self, value):
        """Whatever the value, the shell sees exactly one word."""
        assert shlex.split(f"echo {quote(value)}") == ["echo", value]

    def test_non_strings(self):
        assert quote(5432) == "5432"


class TestComposition:
    def test_join_commands_skips_empty(self):
        assert join_commands("mkdir -p /x", "", "cd /x") == "mkdir -p /x && cd /x"

    def test_bounded_wait(self):
        command = bounded_wait("pg_isready -U postgres", timeout_seconds=120, interval_seconds=2)
        argv = shlex.split(command)
        assert argv[:4] == ["timeout", "120", "bash", "-c"]
        assert argv[4] == "until pg_isready -U postgres; do sleep 2; done"
