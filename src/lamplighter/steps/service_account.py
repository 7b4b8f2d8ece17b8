from __future__ import annotations

import logging

from pydantic import Field, model_validator

from ..context import StepContext
from ..utils.macos import find_free_id, parse_dscl_ids
from .base import BaseStep, StepConfig, StepError, step_aliases

logger = logging.getLogger(__name__)


class ServiceAccountConfig(StepConfig):
    """Brief: Typed configuration for the resolver's unprivileged account.

    The user and group name is the shared resolver account
    (StepContext.resolver.account, default _unbound).

    Inputs:
      - real_name: Directory RealName.
      - id_min/id_max: Inclusive reserved range scanned for a free UID/GID.
      - shell: Login shell (a non-login shell).
      - home: Home directory (an empty, root-owned directory).
    """

    real_name: str = Field(default="Unbound DNS resolver")
    id_min: int = Field(default=301, ge=1)
    id_max: int = Field(default=499, ge=1)
    shell: str = Field(default="/usr/bin/false")
    home: str = Field(default="/var/empty")

    @model_validator(mode="after")
    def _check_range(self):
        if self.id_min > self.id_max:
            raise ValueError("id_min must be <= id_max")
        return self


@step_aliases("service_account", "account")
class ServiceAccount(BaseStep):
    """Create a dedicated unprivileged user/group for the resolver.

    One id is picked that is free both as a UID and as a GID so the
    account's primary group shares its number.
    """

    priority = 30

    @classmethod
    def get_config_model(cls):
        return ServiceAccountConfig

    def is_applied(self, ctx: StepContext) -> bool:
        res = ctx.shell.run(
            ["dscl", ".", "-read", f"/Users/{ctx.resolver.account}"], check=False
        )
        return res.ok

    def allocate_id(self, ctx: StepContext) -> int:
        s = self.settings
        uids = parse_dscl_ids(
            ctx.shell.run(["dscl", ".", "-list", "/Users", "UniqueID"]).stdout
        )
        gids = parse_dscl_ids(
            ctx.shell.run(["dscl", ".", "-list", "/Groups", "PrimaryGroupID"]).stdout
        )
        free = find_free_id(uids | gids, s.id_min, s.id_max)
        if free is None:
            raise StepError(f"no free UID/GID in range [{s.id_min}, {s.id_max}]")
        return free

    def apply(self, ctx: StepContext) -> None:
        s = self.settings
        account = ctx.resolver.account
        new_id = self.allocate_id(ctx)
        logger.info("Creating service account %s with id %d (sudo)", account, new_id)

        group = f"/Groups/{account}"
        for attrs in (
            [],
            ["PrimaryGroupID", str(new_id)],
            ["RealName", s.real_name],
            ["Password", "*"],
        ):
            ctx.shell.run(["dscl", ".", "-create", group, *attrs], sudo=True)

        user = f"/Users/{account}"
        for attrs in (
            [],
            ["UniqueID", str(new_id)],
            ["PrimaryGroupID", str(new_id)],
            ["UserShell", s.shell],
            ["NFSHomeDirectory", s.home],
            ["RealName", s.real_name],
            ["Password", "*"],
        ):
            ctx.shell.run(["dscl", ".", "-create", user, *attrs], sudo=True)
