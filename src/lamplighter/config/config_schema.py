"""JSON Schema-based validation for lamplighter YAML configuration.

The schema document ships inside the package as ``assets/config-schema.json``.
Validation runs after variable expansion so ``${KEY}`` references are checked
in their final form.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value)


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level ``vars`` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string that is exactly ``$KEY`` or ``${KEY}`` is replaced by the
        variable's YAML value (list, mapping, int, ...).
      - ``${KEY}`` inside a longer string is replaced by the value's text.
      - A list item naming a list variable is spliced into the parent list.
      - Variables may reference other variables; cycles raise ValueError.
      - Unknown ``${NAME}`` references are left untouched.
    """

    variables = cfg.get("vars")
    if variables is None:
        cfg.pop("vars", None)
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")

    for k in variables:
        if not isinstance(k, str) or not _VAR_KEY.fullmatch(k):
            raise ValueError(f"config.vars key {k!r} must match [A-Z_][A-Z0-9_]*")

    resolved: Dict[str, Any] = {}

    def _resolve(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError(f"config.vars contains a cycle: {' -> '.join(stack + [key])}")
        stack.append(key)
        value = _expand(variables[key], stack)
        stack.pop()
        resolved[key] = value
        return value

    def _whole_ref(text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}"):
            name = text[2:-1]
        elif text.startswith("$"):
            name = text[1:]
        else:
            return None
        return name if name in variables else None

    def _expand_string(text: str, stack: List[str]) -> Any:
        name = _whole_ref(text)
        if name is not None:
            return copy.deepcopy(_resolve(name, stack))

        def _repl(match: re.Match) -> str:
            k = match.group(1)
            if k not in variables:
                return match.group(0)
            return _scalar_text(_resolve(k, stack))

        return _VAR_PATTERN.sub(_repl, text)

    def _expand(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            out: List[Any] = []
            for item in obj:
                value = _expand(item, stack)
                if isinstance(item, str) and _whole_ref(item) and isinstance(value, list):
                    out.extend(value)
                else:
                    out.append(value)
            return out
        if isinstance(obj, dict):
            return {k: _expand(v, stack) for k, v in obj.items()}
        return obj

    for k in list(variables):
        _resolve(k, [])

    for top_key in list(cfg):
        if top_key != "vars":
            cfg[top_key] = _expand(cfg[top_key], [])
    cfg.pop("vars", None)


def normalize_step_entries(cfg: Dict[str, Any]) -> None:
    """Brief: Drop disabled step entries and strip human-only fields.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Notes:
      - ``enabled: false`` may appear on the entry or inside its ``config``.
      - ``comment`` is removed from both places before validation.
    """

    steps = cfg.get("steps")
    if not isinstance(steps, list):
        return

    kept: List[Any] = []
    for entry in steps:
        if not isinstance(entry, dict):
            kept.append(entry)
            continue
        config_obj = entry.get("config")
        enabled = entry.pop("enabled", True)
        if isinstance(config_obj, dict):
            enabled = config_obj.pop("enabled", enabled)
            config_obj.pop("comment", None)
        entry.pop("comment", None)
        if enabled is None or bool(enabled):
            kept.append(entry)
    cfg["steps"] = kept


def get_default_schema_path() -> Path:
    """Brief: Path of the schema bundled with the package."""
    return Path(__file__).resolve().parent.parent / "assets" / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Normalize and validate a parsed YAML configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: vars expanded, disabled steps removed).
      - schema_path: Optional explicit path to the JSON Schema file.
      - config_path: Optional YAML path, used only for error messages.

    Outputs:
      - None on success.

    Raises:
      - ValueError: Variable errors or any schema violation; the message lists
        every offending instance path.

    Example:
      >>> validate_config({"steps": ["homebrew", {"module": "network"}]})
    """

    expand_variables(cfg)
    normalize_step_entries(cfg)

    validator = Draft202012Validator(_load_schema(schema_path))
    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if errors:
        raise ValueError(_format_errors(errors, config_path=config_path))
