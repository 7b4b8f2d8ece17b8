from __future__ import annotations

import argparse
import logging
import sys
from typing import List

from . import __version__
from .config.config_parser import build_context, load_steps, parse_config_file, select_steps
from .config.logging_config import init_logging
from .runner import check_steps, run_steps
from .steps.base import StepError, StepFailed
from .steps.certificate import issue_certificate
from .utils.shell import CommandError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lamplighter",
        description="Bootstrap a local trusted CA and DNS resolver on macOS",
    )
    parser.add_argument("--config", default=None, help="Path to YAML config (optional)")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report which steps are applied or pending without changing anything",
    )
    parser.add_argument(
        "--only",
        action="append",
        metavar="STEP",
        help="Run only this step (by name or alias); may be repeated",
    )
    parser.add_argument(
        "--issue",
        metavar="HOST",
        help="Issue a leaf certificate for HOST from the local root CA and exit",
    )
    parser.add_argument(
        "--profile", default="server", help="Signing profile used with --issue"
    )
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Override a config variable (KEY must be ALL_UPPERCASE)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warn", "error", "crit"],
        help="Override logging.level from the config",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the bootstrap.
    Parses arguments, loads configuration, builds the steps, and runs them.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on success, 1 on invalid configuration or a failed step.

    Example use:
        CLI:
            lamplighter --config ~/.lamplighter/config.yaml
            lamplighter --check
            lamplighter --issue api.custom
            PYTHONPATH=src python -m lamplighter.main --only resolver
    """
    args = _build_parser().parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.var)
    except (ValueError, OSError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(cfg.get("logging"), level_override=args.log_level)
    logger = logging.getLogger("lamplighter.main")
    if args.config:
        logger.info("Loaded config from %s", args.config)

    ctx = build_context(cfg)

    if args.issue:
        try:
            issued = issue_certificate(ctx, args.issue, profile=args.profile)
        except (StepError, CommandError, ValueError) as exc:
            logger.error("Issuing %s failed: %s", args.issue, exc)
            return 1
        print(issued.chain)
        return 0

    try:
        steps = select_steps(load_steps(cfg.get("steps")), args.only)
    except (KeyError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Loaded %d steps: %s", len(steps), [s.name for s in steps])

    if args.check:
        for name, applied in check_steps(steps, ctx):
            print(f"{name:<20} {'applied' if applied else 'pending'}")
        return 0

    try:
        run_steps(steps, ctx)
    except StepFailed as exc:
        logger.error("Bootstrap stopped: %s (%s)", exc, exc.__cause__)
        return 1
    logger.info("Bootstrap complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
