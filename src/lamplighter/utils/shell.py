"""Thin subprocess wrapper used by every step to drive external tools.

Brief:
  lamplighter never reimplements what brew, cfssl, unbound, dscl or
  networksetup do; it invokes them. This module centralizes how that happens
  so that:
    - every command is logged before it runs,
    - a non-zero exit raises CommandError carrying the tool's raw output,
    - elevated commands are prefixed with sudo in exactly one place,
    - tests can swap the whole thing for a recording fake.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class CommandResult:
    """Brief: Outcome of one external command.

    Inputs:
      - args: Full argv that was executed (including any sudo prefix).
      - returncode: Process exit status.
      - stdout: Captured standard output ("" when output was not captured).
      - stderr: Captured standard error ("" when output was not captured).

    Outputs:
      - CommandResult instance; ``ok`` is True for a zero exit status.
    """

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    """Brief: An external tool exited non-zero.

    The tool's own diagnostics are preserved untranslated in ``stderr`` (and
    ``stdout``) so the operator sees exactly what failed.
    """

    def __init__(self, result: CommandResult) -> None:
        self.result = result
        self.args_list = list(result.args)
        self.returncode = result.returncode
        self.stdout = result.stdout
        self.stderr = result.stderr
        detail = (result.stderr or result.stdout or "").strip()
        msg = f"command failed (exit {result.returncode}): {shlex.join(result.args)}"
        if detail:
            msg = f"{msg}\n{detail}"
        super().__init__(msg)


class Shell:
    """Brief: Execute external commands with logging and fail-fast semantics.

    Inputs (constructor):
      - sudo: Path or name of the sudo binary (default: "sudo").
      - env: Optional environment mapping for child processes.

    Example:
      >>> sh = Shell()
      >>> sh.run(["true"]).ok
      True
    """

    def __init__(self, *, sudo: str = "sudo", env: Optional[dict] = None) -> None:
        self.sudo = sudo
        self.env = env

    def run(
        self,
        args: Sequence[str],
        *,
        input: Optional[str] = None,
        sudo: bool = False,
        non_interactive: bool = False,
        check: bool = True,
        capture: bool = True,
        cwd: Optional[PathLike] = None,
    ) -> CommandResult:
        """Brief: Run one command and return its result.

        Inputs:
          - args: argv list; the first element is the executable.
          - input: Optional text fed to stdin.
          - sudo: Prefix the command with sudo.
          - non_interactive: With sudo, pass ``-n`` so sudo fails instead of
            prompting (used for commands delegated by the sudoers drop-in).
          - check: Raise CommandError on non-zero exit (default True).
          - capture: Capture stdout/stderr; when False output streams to the
            terminal (installers that prompt or print progress).
          - cwd: Optional working directory.

        Outputs:
          - CommandResult.

        Raises:
          - CommandError: When check is True and the exit status is non-zero.
          - FileNotFoundError: When the executable does not exist.
        """

        argv = [str(a) for a in args]
        if sudo:
            prefix = [self.sudo, "-n"] if non_interactive else [self.sudo]
            argv = prefix + argv
        logger.debug("exec: %s", shlex.join(argv))

        proc = subprocess.run(
            argv,
            input=input,
            text=True,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            cwd=str(cwd) if cwd is not None else None,
            env=self.env,
        )
        result = CommandResult(
            args=argv,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if check and not result.ok:
            raise CommandError(result)
        return result

    def spawn(self, args: Sequence[str]) -> subprocess.Popen:
        """Brief: Start a background process; the caller must reap it.

        Output is captured so a listener that dies early can be diagnosed.
        """
        argv = [str(a) for a in args]
        logger.debug("spawn: %s", shlex.join(argv))
        return subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=self.env,
        )

    def which(self, name: str, extra_dirs: Iterable[PathLike] = ()) -> Optional[str]:
        """Brief: Locate an executable on PATH or in ``extra_dirs``.

        Inputs:
          - name: Executable name.
          - extra_dirs: Directories checked after PATH (e.g. /opt/homebrew/bin).

        Outputs:
          - Absolute path string, or None when not found.
        """

        found = shutil.which(name)
        if found:
            return os.path.abspath(found)
        for d in extra_dirs:
            candidate = Path(d) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return None

    def install_file(
        self,
        content: str,
        dest: PathLike,
        *,
        mode: int,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        sudo: bool = True,
        validate_with: Optional[Sequence[str]] = None,
    ) -> None:
        """Brief: Write ``content`` to ``dest`` via install(1), optionally as root.

        Inputs:
          - content: Full file body.
          - dest: Destination path.
          - mode: Permission bits applied by install (e.g. 0o444).
          - owner/group: Optional ownership passed to install -o/-g.
          - sudo: Run install under sudo (default True).
          - validate_with: Optional argv run against the staging file before
            it is installed (e.g. ["visudo", "-c", "-f"]); a failure leaves
            the destination untouched.

        Outputs:
          - None. The staging file is always removed.
        """

        fd, tmp = tempfile.mkstemp(prefix="lamplighter-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            if validate_with:
                self.run([*validate_with, tmp])
            argv = ["install", "-m", format(mode, "04o")]
            if owner:
                argv += ["-o", owner]
            if group:
                argv += ["-g", group]
            argv += [tmp, str(dest)]
            self.run(argv, sudo=sudo)
        finally:
            os.unlink(tmp)
