from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Sequence, Type, final

from pydantic import BaseModel

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..context import StepContext

logger = logging.getLogger(__name__)


class StepError(RuntimeError):
    """Brief: A step's own precondition or verification failed.

    Raised for conditions no external tool reports by exit status, e.g. no
    free id in the reserved range or a leaf certificate that does not chain
    to the root.
    """


class StepFailed(RuntimeError):
    """Brief: Raised by the runner when a step aborts the bootstrap.

    Inputs:
      - step: Name of the failing step.

    The original exception is always attached as ``__cause__``.
    """

    def __init__(self, step: str) -> None:
        self.step = step
        super().__init__(f"step {step!r} failed")


class StepConfig(BaseModel):
    """Brief: Base pydantic model for per-step configuration.

    Unknown keys are rejected so typos in config.yaml surface at load time
    rather than being silently ignored.
    """

    model_config = {"extra": "forbid"}


class BaseStep:
    """Brief: Base class for all bootstrap steps.

    A step is a single idempotent check-then-act transition:
      - is_applied(ctx) inspects the machine and reports whether the expected
        artifact or state is already present.
      - apply(ctx) performs the change. It is only called when is_applied()
        returned False.

    Steps are ordered by ``priority`` (lower runs first). Steps that must run
    on every invocation (example issuance, self-test) set ``always_run``.

    Inputs:
      - name: Optional instance name used in logs (defaults to the alias).
      - priority: Optional override of the class priority, clamped to [1, 255].
      - **config: Step-specific configuration, validated through the model
        returned by get_config_model().

    Example use:
        >>> from lamplighter.steps.base import BaseStep
        >>> class Touch(BaseStep):
        ...     priority = 5
        ...     def is_applied(self, ctx):
        ...         return False
        >>> Touch(priority=300).priority
        255
    """

    priority: ClassVar[int] = 50
    always_run: ClassVar[bool] = False
    aliases: ClassVar[Sequence[str]] = ()

    @classmethod
    def get_aliases(cls) -> Sequence[str]:
        return tuple(getattr(cls, "aliases", ()))

    @classmethod
    def get_config_model(cls) -> Optional[Type[StepConfig]]:
        """Brief: Return the pydantic model used to validate step config.

        Outputs:
          - StepConfig subclass, or None when the step takes no config.
        """
        return None

    @final
    def __init__(
        self, name: Optional[str] = None, priority: object = None, **config: Any
    ) -> None:
        model_cls = self.get_config_model()
        if model_cls is None:
            if config:
                raise ValueError(
                    f"{self.__class__.__name__} takes no configuration, got {sorted(config)}"
                )
            self.settings: Any = None
        else:
            try:
                self.settings = model_cls(**config)
            except Exception as exc:
                raise ValueError(
                    f"Invalid configuration for step {self.__class__.__name__}: {exc}"
                ) from exc

        aliases = self.get_aliases()
        self.name = name or (aliases[0] if aliases else self.__class__.__name__)
        self.priority = self._parse_priority_value(
            self.__class__.priority if priority is None else priority
        )
        logger.debug("loaded step %s (priority=%d)", self.name, self.priority)

    @staticmethod
    def _parse_priority_value(value: object) -> int:
        """Brief: Parse and clamp a priority value to the inclusive range [1, 255].

        Example:
            >>> BaseStep._parse_priority_value("25")
            25
            >>> BaseStep._parse_priority_value(0)
            1
        """
        default = 50
        try:
            val = int(value)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            logger.warning("Invalid priority %r; using default %d", value, default)
            return default
        return max(1, min(255, val))

    def is_applied(self, ctx: "StepContext") -> bool:
        """Brief: Report whether this step's target state already holds."""
        raise NotImplementedError

    def apply(self, ctx: "StepContext") -> None:
        """Brief: Bring the machine into this step's target state."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} priority={self.priority}>"


def step_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a step class for registry discovery.

    Example:
        >>> @step_aliases("homebrew", "brew")
        ... class Homebrew(BaseStep):
        ...     pass
        >>> Homebrew.aliases
        ('homebrew', 'brew')
    """

    def decorator(cls):
        cls.aliases = tuple(aliases)
        return cls

    return decorator
