"""
Brief: Tests for the end-to-end self-test step and its process helpers.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import socket
import sys

import dns.exception
import pytest

from lamplighter.steps import self_test as self_test_mod
from lamplighter.steps.base import StepError
from lamplighter.steps.self_test import SelfTest, stop_process, wait_for_port
from lamplighter.utils.shell import CommandError


class FakeProc:
    """Brief: Minimal Popen stand-in recording lifecycle calls."""

    def __init__(self, exit_code=None, stderr="", stubborn=False):
        self.exit_code = exit_code
        self.returncode = exit_code
        self.stderr_text = stderr
        self.stubborn = stubborn
        self.stdout = None
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.stubborn:
            self.returncode = -15

    def wait(self, timeout=None):
        if self.returncode is None:
            raise self_test_mod.subprocess.TimeoutExpired("listener", timeout)
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9

    def communicate(self):
        return "", self.stderr_text


@pytest.fixture
def listening_port():
    """
    Brief: A bound, listening TCP socket on loopback standing in for the listener.

    Inputs:
      - None

    Outputs:
      - int: port number
    """
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(8)
    try:
        yield srv.getsockname()[1]
    finally:
        srv.close()


@pytest.fixture
def issued(ctx):
    """Brief: Chain and key files for example.custom in cert_dir."""
    ctx.paths.cert_dir.mkdir(parents=True)
    (ctx.paths.cert_dir / "example.custom-chain.pem").write_text("chain")
    (ctx.paths.cert_dir / "example.custom-key.pem").write_text("key")
    return ctx.paths.cert_dir


def _use_proc(monkeypatch, ctx, proc):
    spawned = []

    def spawn(args):
        spawned.append([str(a) for a in args])
        return proc

    monkeypatch.setattr(ctx.shell, "spawn", spawn)
    return spawned


def test_self_test_success_spawns_listener_and_fetches(ctx, issued, listening_port, monkeypatch):
    """
    Brief: The listener is spawned with the chain and key, curl verifies, listener stops.

    Inputs:
      - ctx: StepContext
      - listening_port: loopback port accepting connections

    Outputs:
      - None: Asserts spawn argv, curl argv and termination
    """
    proc = FakeProc()
    spawned = _use_proc(monkeypatch, ctx, proc)
    ctx.shell.on("curl", stdout="lamplighter ok\n")

    SelfTest(port=listening_port, check_dns=False).apply(ctx)

    assert spawned == [
        [
            sys.executable,
            "-m",
            "lamplighter.listener",
            "--cert",
            str(issued / "example.custom-chain.pem"),
            "--key",
            str(issued / "example.custom-key.pem"),
            "--host",
            "127.0.0.1",
            "--port",
            str(listening_port),
        ]
    ]
    (curl,) = [c.argv for c in ctx.shell.calls if c.argv[0] == "curl"]
    assert curl[-1] == f"https://example.custom:{listening_port}/"
    assert "--insecure" not in curl and "-k" not in curl
    assert proc.terminated


def test_listener_terminated_even_when_curl_fails(ctx, issued, listening_port, monkeypatch):
    """
    Brief: A failing HTTPS fetch still stops the listener before the error propagates.

    Inputs:
      - ctx: StepContext with curl exiting 60 (certificate problem)

    Outputs:
      - None: Asserts CommandError and termination
    """
    proc = FakeProc()
    _use_proc(monkeypatch, ctx, proc)
    ctx.shell.on("curl", returncode=60, stderr="curl: (60) SSL certificate problem")

    with pytest.raises(CommandError, match="SSL certificate problem"):
        SelfTest(port=listening_port, check_dns=False).apply(ctx)
    assert proc.terminated


def test_missing_artifacts_fail_before_spawning(ctx, monkeypatch):
    """
    Brief: Without an issued chain the step fails without starting anything.

    Inputs:
      - ctx: StepContext without certificates

    Outputs:
      - None: Asserts StepError and no spawn
    """
    spawned = _use_proc(monkeypatch, ctx, FakeProc())
    with pytest.raises(StepError, match="issue a certificate"):
        SelfTest(check_dns=False).apply(ctx)
    assert spawned == []


def test_dns_check(ctx, issued, monkeypatch):
    """
    Brief: The DNS phase requires the override address from the local resolver.

    Inputs:
      - ctx: StepContext
      - monkeypatch: replaces resolve_local

    Outputs:
      - None: Asserts wrong answers and resolver errors become StepError
    """
    spawned = _use_proc(monkeypatch, ctx, FakeProc())
    monkeypatch.setattr(self_test_mod, "resolve_local", lambda host, ns: ["93.184.216.34"])
    with pytest.raises(StepError, match="expected 127.0.0.1"):
        SelfTest().apply(ctx)

    def boom(host, ns):
        raise dns.exception.Timeout()

    monkeypatch.setattr(self_test_mod, "resolve_local", boom)
    with pytest.raises(StepError, match="could not resolve example.custom"):
        SelfTest().apply(ctx)
    assert spawned == []


def test_wait_for_port_reports_early_exit():
    """
    Brief: A listener that dies before accepting connections is reported with its stderr.

    Inputs:
      - None

    Outputs:
      - None: Asserts StepError message
    """
    proc = FakeProc(exit_code=1, stderr="OSError: [Errno 48] Address already in use\n")
    with pytest.raises(StepError, match="Address already in use"):
        wait_for_port("127.0.0.1", 9, 1.0, proc)


def test_wait_for_port_deadline():
    """
    Brief: A port that never opens raises after the deadline.

    Inputs:
      - None

    Outputs:
      - None: Asserts StepError message
    """
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    with pytest.raises(StepError, match="did not accept connections"):
        wait_for_port("127.0.0.1", port, 0.3, FakeProc(), interval=0.05)


def test_stop_process_escalates_to_kill():
    """
    Brief: A process that ignores terminate() is killed after the grace period.

    Inputs:
      - None

    Outputs:
      - None: Asserts kill was used
    """
    proc = FakeProc(stubborn=True)
    stop_process(proc, grace=0.01)
    assert proc.terminated and proc.killed


def test_self_test_always_runs():
    """
    Brief: The self-test is never reported as applied.

    Inputs:
      - None

    Outputs:
      - None: Asserts class flags
    """
    step = SelfTest()
    assert step.always_run is True
    assert step.is_applied(None) is False


@pytest.mark.parametrize("hostname", ["*.custom", "*.Example.Custom."])
def test_wildcard_hostname_is_a_config_error(hostname):
    """
    Brief: A wildcard cannot be resolved or fetched, so it is rejected up front.

    Inputs:
      - hostname: wildcard name

    Outputs:
      - None: Asserts ValueError naming the concrete-host requirement
    """
    with pytest.raises(ValueError, match="concrete hostname"):
        SelfTest(hostname=hostname)


def test_hostname_is_normalized():
    """
    Brief: Case and a trailing dot are normalized before any check runs.

    Inputs:
      - None

    Outputs:
      - None: Asserts stored hostname
    """
    assert SelfTest(hostname="Example.Custom.").settings.hostname == "example.custom"
