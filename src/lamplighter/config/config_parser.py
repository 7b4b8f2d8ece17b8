"""Configuration parsing and step loading for lamplighter.

Brief:
  This module contains the configuration utilities used by the CLI
  entrypoint. It centralizes:
    - reading the YAML config file (optional; defaults apply without one)
    - merging variables from config/env/CLI
    - JSON Schema validation (variable expansion happens in validate_config)
    - building the StepContext from the ``paths`` and ``resolver`` sections
    - turning ``steps`` entries into configured BaseStep instances

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config dicts, a StepContext and step instances
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, Iterable, List, Optional

import yaml

from ..context import Paths, ResolverSettings, StepContext
from ..steps.base import BaseStep
from ..steps.registry import default_step_classes, discover_steps, get_step_class
from ..utils.shell import Shell
from .config_schema import validate_config

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")


def _is_var_key(key: str) -> bool:
    """Brief: True when ``key`` is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""
    return bool(key) and bool(_VAR_KEY.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (the original string when it is not valid YAML).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI ``KEY=YAML`` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Notes:
      - Only environment variables already declared under ``vars`` are
        picked up, so unrelated names like PATH or HOME never leak in.
      - Values are parsed as YAML so list/dict/int/bool values can be provided.

    Example:
      >>> cfg = {'vars': {'PORT': 8443}}
      >>> parse_config_variables(cfg, cli_vars=['PORT=9443'], environ={})['PORT']
      9443
    """

    base = cfg.get("vars")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k in list(merged):
        if isinstance(k, str) and k in env:
            merged[k] = _parse_yaml_value(str(env[k]))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["vars"] = merged
    return merged


def parse_config_file(
    config_path: Optional[str],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file, or None to start
        from an empty config (all defaults).
      - cli_vars: Optional list of CLI ``KEY=YAML`` assignments (from -v/--var).
      - environ: Optional environment mapping used for variable overrides.

    Outputs:
      - dict: Parsed configuration with variables expanded and disabled steps
        removed.

    Raises:
      - ValueError: When the YAML is not a mapping, variables are invalid, or
        schema validation fails.
      - OSError: When the file cannot be read.
    """

    cfg: Any = {}
    if config_path:
        with open(os.path.expanduser(config_path), "r", encoding="utf-8") as f:
            try:
                cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def build_context(cfg: Dict[str, Any], *, shell: Optional[Shell] = None) -> StepContext:
    """Brief: Build the shared StepContext from a validated config."""
    return StepContext(
        paths=Paths.from_config(cfg.get("paths")),
        shell=shell or Shell(),
        resolver=ResolverSettings.from_config(cfg.get("resolver")),
    )


def load_steps(step_specs: Optional[Iterable[Any]]) -> List[BaseStep]:
    """Brief: Build configured step instances from ``steps`` entries.

    Inputs:
      - step_specs: ``cfg['steps']`` after validation, or None. Each item is:
        - str: a step alias or dotted "pkg.mod.Class" path, or
        - dict: entry mapping supporting:
          - module: alias or dotted path (required)
          - name: optional instance label used in logs
          - priority: optional run-order override, clamped to [1, 255]
          - config: step-specific configuration mapping
          - enabled / comment: handled during validation

    Outputs:
      - list[BaseStep]: Step instances. When step_specs is None every
        discovered step is returned with its defaults.

    Raises:
      - KeyError: Unknown step alias (with close-match suggestions).
      - ValueError: Invalid step config or duplicate instance names.

    Example:
      >>> [s.name for s in load_steps(["homebrew", {"module": "root_ca"}])]
      ['homebrew', 'root_ca']
    """

    if step_specs is None:
        return [cls() for cls in default_step_classes()]

    registry = discover_steps()
    steps: List[BaseStep] = []
    seen_names: set[str] = set()

    for spec in step_specs:
        if isinstance(spec, str):
            spec = {"module": spec}
        if not isinstance(spec, dict):
            raise ValueError(f"steps[]: expected alias or mapping, got {spec!r}")

        module_path = str(spec.get("module") or "").strip()
        if not module_path:
            raise ValueError("steps[]: each entry must name a module")

        step_cls = get_step_class(module_path, registry)
        config = spec.get("config") or {}
        if not isinstance(config, dict):
            raise ValueError(f"steps[{module_path}].config must be a mapping")

        step = step_cls(name=spec.get("name"), priority=spec.get("priority"), **config)
        if step.name in seen_names:
            raise ValueError(
                "Duplicate step name '%s'. Each step must have a unique name; "
                "set 'name' explicitly in steps[] to disambiguate." % step.name
            )
        seen_names.add(step.name)
        steps.append(step)

    return steps


def select_steps(steps: List[BaseStep], only: Optional[Iterable[str]]) -> List[BaseStep]:
    """Brief: Keep only the steps matching ``only`` (by name or alias).

    Raises:
      - ValueError: When an entry of ``only`` matches no configured step.
    """

    wanted = [o.strip().lower().replace("-", "_") for o in only or []]
    if not wanted:
        return list(steps)

    selected: List[BaseStep] = []
    matched: set[str] = set()
    for step in steps:
        keys = {step.name.lower(), *(a.lower() for a in step.get_aliases())}
        hits = keys.intersection(wanted)
        if hits:
            selected.append(step)
            matched.update(hits)

    missing = [w for w in wanted if w not in matched]
    if missing:
        raise ValueError(f"--only: no configured step matches {', '.join(missing)}")
    return selected
