from __future__ import annotations

import json
import logging
import os
from typing import Dict, List

from pydantic import BaseModel, Field

from ..context import StepContext
from .base import BaseStep, StepConfig, step_aliases

logger = logging.getLogger(__name__)


class Profile(BaseModel):
    usages: List[str]
    expiry: str = "8760h"


def _default_profiles() -> Dict[str, Profile]:
    return {
        "server": Profile(usages=["signing", "key encipherment", "server auth"]),
        "client": Profile(usages=["signing", "key encipherment", "client auth"]),
        "peer": Profile(
            usages=["signing", "key encipherment", "server auth", "client auth"]
        ),
    }


class SigningProfileConfig(StepConfig):
    """Brief: Typed configuration for the cfssl signing profile document.

    Inputs:
      - default_expiry: Expiry applied when a profile does not set one.
      - profiles: Named issuance profiles (usages + expiry).
    """

    default_expiry: str = Field(default="8760h")
    profiles: Dict[str, Profile] = Field(default_factory=_default_profiles)


def render_signing_profile(settings: SigningProfileConfig) -> str:
    """Brief: Serialize the cfssl ``-config`` JSON document.

    Example:
      >>> doc = json.loads(render_signing_profile(SigningProfileConfig()))
      >>> sorted(doc["signing"]["profiles"])
      ['client', 'peer', 'server']
    """
    doc = {
        "signing": {
            "default": {"expiry": settings.default_expiry},
            "profiles": {
                name: {"usages": list(p.usages), "expiry": p.expiry}
                for name, p in settings.profiles.items()
            },
        }
    }
    return json.dumps(doc, indent=2) + "\n"


@step_aliases("signing_profile", "ca_config")
class SigningProfile(BaseStep):
    """Write the CA signing-profile file used for every leaf issuance.

    An existing file is left alone so user-added profiles survive re-runs.
    """

    priority = 70

    @classmethod
    def get_config_model(cls):
        return SigningProfileConfig

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.paths.signing_profile.exists()

    def apply(self, ctx: StepContext) -> None:
        path = ctx.paths.signing_profile
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_signing_profile(self.settings), encoding="utf-8")
        os.chmod(path, 0o644)
        logger.info("Wrote signing profiles %s to %s", sorted(self.settings.profiles), path)
