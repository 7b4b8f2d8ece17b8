from __future__ import annotations

import logging

from pydantic import Field

from ..context import StepContext
from .base import BaseStep, StepConfig, StepError, step_aliases

logger = logging.getLogger(__name__)

INSTALL_URL = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"


class HomebrewConfig(StepConfig):
    """Brief: Typed configuration for the package-manager bootstrap.

    Inputs:
      - install_url: URL of the Homebrew installer script.
    """

    install_url: str = Field(default=INSTALL_URL)


@step_aliases("homebrew", "brew", "package_manager")
class Homebrew(BaseStep):
    """Ensure Homebrew is installed.

    Example use:
        In config.yaml:
        steps:
          - module: homebrew
            config:
              install_url: https://example.test/install.sh
    """

    priority = 10

    @classmethod
    def get_config_model(cls):
        return HomebrewConfig

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.find_brew() is not None

    def apply(self, ctx: StepContext) -> None:
        url = self.settings.install_url
        logger.info("Installing Homebrew from %s", url)
        script = ctx.shell.run(["curl", "-fsSL", url]).stdout
        # The installer prompts for confirmation and sudo, so let it own the tty.
        ctx.shell.run(["/bin/bash", "-c", script], capture=False)
        if ctx.find_brew() is None:
            raise StepError("Homebrew installer finished but brew is still missing")
        logger.info("Homebrew installed at %s", ctx.brew())
