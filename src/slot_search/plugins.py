"""
Loading user-supplied check functions.

The oracle is never built into the package. It is loaded from either a
Python file or an importable module:

    path/to/oracle.py              -> function ``external_check``
    path/to/oracle.py:my_check     -> function ``my_check``
    mypackage.oracles:balance_gt   -> module attribute

The function must accept exactly one positional argument (the candidate
tuple) and return a bool, or a coroutine resolving to one.
"""

import importlib
import importlib.util
import inspect
import logging
import types
from pathlib import Path
from typing import Callable, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PLUGIN_FUNC_NAME = "external_check"


class PluginLoadError(ConfigurationError):
    pass


class PluginSignatureError(ConfigurationError):
    pass


def split_spec(spec: str, default_name: str = PLUGIN_FUNC_NAME) -> Tuple[str, str]:
    """Split ``target[:function]`` into (target, function name)."""
    target, sep, name = spec.rpartition(":")
    # "C:\oracle.py" style drive prefixes are not function names
    if sep and name.isidentifier() and target:
        return target, name
    return spec, default_name


def load_module_from_file(module_file_path: str) -> types.ModuleType:
    """Load a Python module file."""
    path = Path(module_file_path)
    if not path.is_file():
        raise PluginLoadError(f"Plugin file not found: {module_file_path}")
    spec = importlib.util.spec_from_file_location(f"slot_search_plugin_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Could not load spec for: {module_file_path}")
    mod = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(mod)  # executes user code
    except Exception as e:
        raise PluginLoadError(f"Error executing plugin {module_file_path}: {e}") from e
    return mod


def load_check_fn(spec: str, default_name: str = PLUGIN_FUNC_NAME) -> Callable:
    """
    Load a one-argument check function from a file or module spec.

    Raises:
        PluginLoadError: If the module or function cannot be found.
        PluginSignatureError: If the function does not take one positional arg.
    """
    target, name = split_spec(spec, default_name)

    if target.endswith(".py") or Path(target).is_file():
        mod = load_module_from_file(target)
    else:
        try:
            mod = importlib.import_module(target)
        except ImportError as e:
            raise PluginLoadError(f"Could not import plugin module {target!r}: {e}") from e

    fn = getattr(mod, name, None)
    if fn is None or not callable(fn):
        raise PluginLoadError(
            f"Plugin {target!r} must define `{name}(candidate: tuple[str, ...]) -> bool`"
        )

    check_signature(fn, name)
    logger.info(f"Loaded check function {name} from {target}")
    return fn


def check_signature(fn: Callable, name: str = PLUGIN_FUNC_NAME) -> None:
    """Require exactly one positional argument without a default."""
    sig = inspect.signature(fn)
    positional = [
        p for p in sig.parameters.values()
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    required = [p for p in positional if p.default is inspect.Parameter.empty]
    if len(required) != 1:
        raise PluginSignatureError(
            f"{name} must accept exactly one positional arg: (candidate: tuple[str, ...])"
        )


__all__ = [
    'PLUGIN_FUNC_NAME',
    'PluginLoadError',
    'PluginSignatureError',
    'split_spec',
    'load_module_from_file',
    'load_check_fn',
    'check_signature',
]
