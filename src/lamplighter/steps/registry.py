import difflib
import functools
import importlib
import inspect
import logging
import pkgutil
import re
from typing import Dict, Iterable, List, Type

from .base import BaseStep

logger = logging.getLogger(__name__)

_CAMEL_1 = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_2 = re.compile(r"([a-z0-9])([A-Z])")

PACKAGE = "lamplighter.steps"


@functools.lru_cache(maxsize=256)
def _camel_to_snake(name: str) -> str:
    s1 = _CAMEL_1.sub(r"\1_\2", name)
    s2 = _CAMEL_2.sub(r"\1_\2", s1)
    return s2.lower()


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _iter_step_modules(package_name: str = PACKAGE) -> Iterable[str]:
    pkg = importlib.import_module(package_name)
    for modinfo in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
        yield modinfo.name


@functools.lru_cache(maxsize=8)
def discover_steps(package_name: str = PACKAGE) -> Dict[str, Type[BaseStep]]:
    """
    Discover and register steps by importing every module in a package.

    Inputs:
      - package_name (str): Package path to scan for steps

    Outputs:
      - Dict[str, Type[BaseStep]]: Mapping from normalized aliases to step classes

    Raises ImportError if a module import fails and ValueError on duplicate aliases.

    Example:
        >>> registry = discover_steps()
        >>> registry["brew"].__name__
        'Homebrew'
    """
    registry: Dict[str, Type[BaseStep]] = {}

    for modname in _iter_step_modules(package_name):
        try:
            module = importlib.import_module(modname)
        except ImportError:
            logger.error("Failed importing step module %s", modname)
            raise

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if not issubclass(obj, BaseStep) or obj is BaseStep:
                continue

            claimed = set(_normalize(a) for a in (obj.get_aliases() or ()))
            claimed.add(_normalize(_camel_to_snake(obj.__name__)))

            for alias in claimed:
                if alias in registry and registry[alias] is not obj:
                    other = registry[alias]
                    raise ValueError(
                        f"Duplicate step alias '{alias}' claimed by {obj.__module__}.{obj.__name__} "
                        f"and {other.__module__}.{other.__name__}"
                    )
                registry[alias] = obj

    return registry


def default_step_classes(package_name: str = PACKAGE) -> List[Type[BaseStep]]:
    """Brief: Every discovered step class once, in default priority order."""
    unique = {cls: None for cls in discover_steps(package_name).values()}
    return sorted(unique, key=lambda cls: (cls.priority, cls.__name__))


def get_step_class(
    identifier: str, registry: Dict[str, Type[BaseStep]] | None = None
) -> Type[BaseStep]:
    """
    Resolve identifier to a step class.
    - If identifier contains a dot, treat as dotted import path "pkg.mod.Class".
    - Otherwise, treat as alias and resolve via registry.
    """
    ident = identifier.strip()
    if "." in ident:
        modname, _, classname = ident.rpartition(".")
        if not modname or not classname:
            raise ValueError(f"Invalid step path '{identifier}'")
        module = importlib.import_module(modname)
        cls = getattr(module, classname)
        if not (inspect.isclass(cls) and issubclass(cls, BaseStep)):
            raise TypeError(f"{identifier} is not a BaseStep subclass")
        return cls

    reg = registry if registry is not None else discover_steps()
    key = _normalize(ident)
    try:
        return reg[key]
    except KeyError:
        suggestions = difflib.get_close_matches(key, list(reg.keys()), n=3)
        raise KeyError(
            f"Unknown step alias '{identifier}'. "
            f"Known aliases: {', '.join(sorted(reg.keys()))}. "
            f"Suggestions: {suggestions}"
        )
