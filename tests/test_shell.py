"""
Brief: Tests for lamplighter.utils.shell (Shell, CommandResult, CommandError).

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from lamplighter.utils import shell as shell_mod
from lamplighter.utils.shell import CommandError, CommandResult, Shell


def test_run_captures_stdout():
    """
    Brief: run() returns captured stdout and ok for a zero exit.

    Inputs:
      - argv: python -c printing a line

    Outputs:
      - None: Asserts stdout and returncode
    """
    res = Shell().run([sys.executable, "-c", "print('hi')"])
    assert res.ok
    assert res.stdout == "hi\n"
    assert res.args[0] == sys.executable


def test_run_feeds_stdin():
    """
    Brief: run(input=...) passes text on stdin.

    Inputs:
      - input: "abc"

    Outputs:
      - None: Asserts the child echoed stdin back
    """
    res = Shell().run(
        [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"],
        input="abc",
    )
    assert res.stdout == "ABC"


def test_run_non_zero_raises_command_error_with_raw_stderr():
    """
    Brief: Non-zero exit raises CommandError preserving the tool's stderr verbatim.

    Inputs:
      - argv: python -c writing to stderr and exiting 3

    Outputs:
      - None: Asserts error attributes and message
    """
    script = "import sys; sys.stderr.write('boom: bad input\\n'); sys.exit(3)"
    with pytest.raises(CommandError) as ei:
        Shell().run([sys.executable, "-c", script])
    err = ei.value
    assert err.returncode == 3
    assert err.stderr == "boom: bad input\n"
    assert "exit 3" in str(err)
    assert "boom: bad input" in str(err)
    assert err.result.args == err.args_list


def test_run_check_false_returns_failed_result():
    """
    Brief: check=False returns the failing result instead of raising.

    Inputs:
      - argv: python -c exiting 1

    Outputs:
      - None: Asserts ok is False
    """
    res = Shell().run([sys.executable, "-c", "raise SystemExit(1)"], check=False)
    assert not res.ok
    assert res.returncode == 1


def test_run_sudo_prefix(monkeypatch):
    """
    Brief: sudo=True prefixes the sudo binary; non_interactive adds -n.

    Inputs:
      - monkeypatch: replaces subprocess.run

    Outputs:
      - None: Asserts the executed argv
    """
    seen = []

    def fake_run(argv, **kwargs):
        seen.append(argv)
        return subprocess.CompletedProcess(argv, 0, "", "")

    monkeypatch.setattr(shell_mod.subprocess, "run", fake_run)
    sh = Shell(sudo="/usr/bin/sudo")
    sh.run(["networksetup", "-getdnsservers", "Wi-Fi"], sudo=True)
    sh.run(["/usr/bin/dscacheutil", "-flushcache"], sudo=True, non_interactive=True)
    sh.run(["echo", Path("/tmp/x")])
    assert seen == [
        ["/usr/bin/sudo", "networksetup", "-getdnsservers", "Wi-Fi"],
        ["/usr/bin/sudo", "-n", "/usr/bin/dscacheutil", "-flushcache"],
        ["echo", "/tmp/x"],
    ]


def test_command_error_message_without_output():
    """
    Brief: CommandError message omits the detail line when nothing was captured.

    Inputs:
      - result: failing CommandResult with empty output

    Outputs:
      - None: Asserts single-line message
    """
    err = CommandError(CommandResult(["brew", "install", "my pkg"], 1))
    assert str(err) == "command failed (exit 1): brew install 'my pkg'"


def test_which_checks_extra_dirs(tmp_path, monkeypatch):
    """
    Brief: which() falls back to extra_dirs for executables not on PATH.

    Inputs:
      - tmp_path: holds a fake executable

    Outputs:
      - None: Asserts path discovery and None for missing tools
    """
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    tool = tmp_path / "bin" / "brew"
    tool.parent.mkdir()
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755)
    sh = Shell()
    assert sh.which("brew", [tmp_path / "nowhere", tmp_path / "bin"]) == str(tool)
    assert sh.which("definitely-not-installed-tool") is None


def test_install_file_validates_then_installs_and_cleans_up(monkeypatch):
    """
    Brief: install_file writes a staging file, validates it, installs it, removes it.

    Inputs:
      - monkeypatch: records Shell.run invocations

    Outputs:
      - None: Asserts command order, modes and staging cleanup
    """
    calls = []

    def fake_run(self, args, **kwargs):
        argv = [str(a) for a in args]
        if argv[0] == "/usr/sbin/visudo":
            assert Path(argv[-1]).read_text() == "rule\n"
        calls.append((argv, kwargs.get("sudo", False)))
        return CommandResult(argv, 0)

    monkeypatch.setattr(Shell, "run", fake_run)
    Shell().install_file(
        "rule\n",
        "/etc/sudoers.d/lamplighter",
        mode=0o444,
        owner="root",
        group="wheel",
        validate_with=["/usr/sbin/visudo", "-c", "-f"],
    )
    (check_argv, check_sudo), (install_argv, install_sudo) = calls
    tmp = check_argv[-1]
    assert check_argv[:3] == ["/usr/sbin/visudo", "-c", "-f"]
    assert check_sudo is False
    assert install_argv == [
        "install", "-m", "0444", "-o", "root", "-g", "wheel", tmp, "/etc/sudoers.d/lamplighter"
    ]
    assert install_sudo is True
    assert not os.path.exists(tmp)


def test_install_file_validation_failure_skips_install(monkeypatch):
    """
    Brief: A failing validator aborts before install and still removes the staging file.

    Inputs:
      - monkeypatch: validator returns non-zero

    Outputs:
      - None: Asserts CommandError and no install call
    """
    calls = []

    def fake_run(self, args, **kwargs):
        argv = [str(a) for a in args]
        calls.append(argv)
        result = CommandResult(argv, 1, "", "syntax error")
        raise CommandError(result)

    monkeypatch.setattr(Shell, "run", fake_run)
    with pytest.raises(CommandError):
        Shell().install_file("bad", "/tmp/dest", mode=0o444, validate_with=["visudo", "-c", "-f"])
    assert len(calls) == 1
    assert not os.path.exists(calls[0][-1])
