"""Passwordless sudo for the resolver reload commands, and nothing else.

Brief:
  The drop-in names a single Cmnd_Alias holding exactly the three commands
  from resolver.reload_commands(), each with an absolute path and literal
  arguments. The file is syntax-checked with ``visudo -c -f`` before it is
  installed root-owned with mode 0444; sudo ignores drop-ins that are
  writable by anyone but root.
"""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path
from typing import List, Sequence

from pydantic import Field, field_validator

from ..context import StepContext
from .base import BaseStep, StepConfig, step_aliases
from .resolver import reload_commands

logger = logging.getLogger(__name__)

ALIAS_NAME = "LAMPLIGHTER_DNS"
DROP_IN = "/etc/sudoers.d/lamplighter"

# Characters sudoers treats as globs, separators or escapes in a command spec.
_UNSAFE = re.compile(r"[*?\[\]\\,:=]")


class SudoersConfig(StepConfig):
    """Brief: Typed configuration for the sudoers drop-in.

    Inputs:
      - path: Drop-in file path.
      - group: Local group granted the commands (without the leading %).
      - mode: Permission bits for the installed file.

    The delegated brew command restarts ctx.resolver.formula.
    """

    path: str = Field(default=DROP_IN)
    group: str = Field(default="admin")
    mode: int = Field(default=0o444)

    @field_validator("group")
    @classmethod
    def _plain_group(cls, v: str) -> str:
        v = v.lstrip("%")
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.-]*", v):
            raise ValueError(f"invalid group name {v!r}")
        return v

    @field_validator("mode")
    @classmethod
    def _not_writable(cls, v: int) -> int:
        if v & 0o222:
            raise ValueError("sudoers drop-in must not be writable")
        return v


def validate_command(argv: Sequence[str]) -> str:
    """Brief: Render one delegated command, rejecting anything that could widen it.

    Inputs:
      - argv: Executable plus literal arguments.

    Outputs:
      - str: Space-joined command as it appears in the Cmnd_Alias.

    Raises:
      - ValueError: Relative executable, empty argv, the ALL keyword, or any
        sudoers glob/separator character.

    Example:
      >>> validate_command(["/usr/bin/dscacheutil", "-flushcache"])
      '/usr/bin/dscacheutil -flushcache'
    """
    if not argv:
        raise ValueError("empty command")
    if not argv[0].startswith("/"):
        raise ValueError(f"command {argv[0]!r} is not fully qualified")
    for token in argv:
        if not token or token == "ALL" or _UNSAFE.search(token) or any(
            c.isspace() for c in token
        ):
            raise ValueError(f"unsafe token {token!r} in {shlex.join(argv)}")
    return " ".join(argv)


def render_sudoers(commands: List[List[str]], group: str) -> str:
    """Brief: Render the drop-in granting ``group`` exactly ``commands``.

    NOSETENV stops callers from passing environment through; NOPASSWD lets the
    resolver reload run unattended.
    """
    if len(commands) != 3:
        raise ValueError(f"expected exactly three delegated commands, got {len(commands)}")
    rendered = [validate_command(c) for c in commands]
    return (
        "# Managed by lamplighter. Resolver reload commands only.\n"
        f"Cmnd_Alias {ALIAS_NAME} = " + ", ".join(rendered) + "\n"
        f"%{group} ALL=(root) NOPASSWD:NOSETENV: {ALIAS_NAME}\n"
    )


@step_aliases("sudoers", "privileges")
class Sudoers(BaseStep):
    """Install the sudoers drop-in for resolver restart and cache flushes."""

    priority = 50

    @classmethod
    def get_config_model(cls):
        return SudoersConfig

    def is_applied(self, ctx: StepContext) -> bool:
        return Path(self.settings.path).exists()

    def apply(self, ctx: StepContext) -> None:
        s = self.settings
        content = render_sudoers(reload_commands(ctx.brew(), ctx.resolver.formula), s.group)
        logger.info("Installing sudoers drop-in %s for %%%s (sudo)", s.path, s.group)
        ctx.shell.install_file(
            content,
            s.path,
            mode=s.mode,
            owner="root",
            group="wheel",
            validate_with=["/usr/sbin/visudo", "-c", "-f"],
        )
