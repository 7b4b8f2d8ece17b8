from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from .context import StepContext
from .steps.base import BaseStep, StepFailed

logger = logging.getLogger(__name__)


def _ordered(steps: Sequence[BaseStep]) -> List[BaseStep]:
    # Stable sort: list order is preserved for equal priorities.
    return sorted(steps, key=lambda s: s.priority)


def run_steps(steps: Sequence[BaseStep], ctx: StepContext) -> List[str]:
    """
    Run every step in ascending priority order, stopping at the first failure.

    Inputs:
      - steps: Step instances, typically from config_parser.load_steps().
      - ctx: StepContext shared by all steps.
    Outputs:
      - list[str]: Names of the steps whose apply() ran.

    Brief: A step whose is_applied() reports True is skipped. Any exception
    from is_applied() or apply() is logged and re-raised as StepFailed (with
    the original as __cause__); later steps never run and nothing already done
    is rolled back, so re-running resumes at the failed step.

    Example use:
      >>> run_steps([], StepContext())
      []
    """
    applied: List[str] = []
    for step in _ordered(steps):
        try:
            if not step.always_run and step.is_applied(ctx):
                logger.info("[%s] already applied; skipping", step.name)
                continue
            logger.info("[%s] applying", step.name)
            step.apply(ctx)
        except Exception as e:
            logger.error("[%s] failed: %s", step.name, e)
            raise StepFailed(step.name) from e
        applied.append(step.name)
        logger.info("[%s] done", step.name)
    return applied


def check_steps(steps: Sequence[BaseStep], ctx: StepContext) -> List[Tuple[str, bool]]:
    """
    Report which steps are already applied, without changing anything.

    Outputs:
      - list[(name, applied)] in execution order. Always-run steps report False.

    Checks run independently: a check that raises is logged and reported as
    not applied rather than aborting the report.
    """
    report: List[Tuple[str, bool]] = []
    for step in _ordered(steps):
        if step.always_run:
            report.append((step.name, False))
            continue
        try:
            state = bool(step.is_applied(ctx))
        except Exception as e:
            logger.warning("[%s] check failed: %s", step.name, e)
            state = False
        report.append((step.name, state))
    return report
