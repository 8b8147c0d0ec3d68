"""The upstream cost fetch collaborator.

The billing API client lives outside this package. The coordinator only needs
an async callable that takes a TeamProfile and returns a CostSnapshot (or a
mapping with the same fields). The CLI loads it from a ``module:callable``
import path.
"""

import importlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from teamcache.errors import FetcherResolutionError
from teamcache.models import CostSnapshot, TeamProfile

CostFetch = Callable[[TeamProfile], Awaitable[CostSnapshot | Mapping[str, Any]]]


def load_fetcher(import_path: str) -> CostFetch:
    """Resolve ``package.module:callable`` to a cost fetch function.

    Raises:
        FetcherResolutionError: If the path is malformed, the module cannot be
            imported, or the attribute is missing or not callable
    """
    module_name, sep, attribute = import_path.partition(":")
    if not sep or not module_name or not attribute:
        raise FetcherResolutionError(
            f"Invalid fetcher '{import_path}'. Expected 'package.module:callable'."
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise FetcherResolutionError(f"Cannot import fetcher module '{module_name}': {e}") from e

    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise FetcherResolutionError(f"Fetcher '{attribute}' not found in '{module_name}'")

    if not callable(target):
        raise FetcherResolutionError(f"Fetcher '{import_path}' is not callable")
    return target


__all__ = ["CostFetch", "load_fetcher"]
