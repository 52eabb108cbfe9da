"""Dotted-path field resolution shared by conditions and templates.

A path is resolved against the camelCase view of an execution context in this
order:

1. a top-level context key (``formData``, ``variables``, ``metadata``, ...)
2. form data, with an explicit ``formData.`` prefix or when the path (or its
   first segment) names a form field
3. variables, with the same rules and a ``variables.`` prefix
4. metadata, only with an explicit ``metadata.`` prefix
5. a generic lookup over the whole mapping
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from litestar_flows.core.context import ExecutionContext

if TYPE_CHECKING:
    from litestar_flows.core.types import ContextMapping

__all__ = ["MISSING", "as_mapping", "get_path", "resolve_field"]

_INDEX = re.compile(r"\[(\d+)\]")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()
"""Returned when a path does not resolve to anything."""

_SCOPES: tuple[tuple[str, tuple[str, ...], bool], ...] = (
    ("formData", ("formData.", "form_data."), True),
    ("variables", ("variables.",), True),
    ("metadata", ("metadata.",), False),
)


def as_mapping(context: ExecutionContext | Mapping[str, Any]) -> ContextMapping:
    """Return the mapping view paths are resolved against."""
    if isinstance(context, ExecutionContext):
        return context.as_mapping()
    return dict(context)


def get_path(obj: Any, path: str) -> Any:
    """Walk ``obj`` along a dotted path.

    Mapping keys, sequence indices (``items.0`` or ``items[0]``) and object
    attributes are followed. A key that literally contains the whole path wins.

    Args:
        obj: The root object.
        path: Dotted path.

    Returns:
        The value found, or :data:`MISSING`.
    """
    if isinstance(obj, Mapping) and path in obj:
        return obj[path]
    current = obj
    for part in _INDEX.sub(r".\1", path).split("."):
        if part == "":
            continue
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str | bytes):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        elif current is not None and not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


def resolve_field(path: str, context: ExecutionContext | Mapping[str, Any]) -> Any:
    """Resolve ``path`` against an execution context.

    Args:
        path: Dotted path such as ``age``, ``formData.customer.email`` or
            ``variables.total``.
        context: The execution context or its mapping view.

    Returns:
        The resolved value, or :data:`MISSING` when nothing matches.

    Example:
        >>> resolve_field("age", ExecutionContext(form_data={"age": 20}))
        20
    """
    mapping = as_mapping(context)
    if path in mapping:
        return mapping[path]

    head = path.split(".", 1)[0].split("[", 1)[0]
    for scope, prefixes, implicit in _SCOPES:
        values = mapping.get(scope)
        if not isinstance(values, Mapping):
            continue
        for prefix in prefixes:
            if path.startswith(prefix):
                return get_path(values, path[len(prefix) :])
        if implicit and (path in values or head in values):
            return get_path(values, path)

    return get_path(mapping, path)
