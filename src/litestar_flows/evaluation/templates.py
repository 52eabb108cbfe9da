"""``{{ dotted.path }}`` substitution into strings and nested structures."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from litestar_flows.evaluation.paths import MISSING, as_mapping, resolve_field

if TYPE_CHECKING:
    from litestar_flows.core.context import ExecutionContext

__all__ = ["PLACEHOLDER", "TemplateResolver", "format_value"]

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def _json_ready(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key if isinstance(key, str) else format_value(key): _json_ready(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [_json_ready(item) for item in value]
    return value


def format_value(value: Any) -> str:
    """Render a resolved value for interpolation.

    Missing values and ``None`` render as an empty string, booleans as
    ``true``/``false``, mappings and lists as JSON and dates as ISO-8601.
    Mapping keys that are not strings are rendered the same way first.
    """
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Mapping | list | tuple):
        try:
            return json.dumps(_json_ready(value), default=str, ensure_ascii=False)
        except (TypeError, ValueError, RecursionError):
            return str(value)
    return str(value)


class TemplateResolver:
    """Resolves placeholders against an execution context.

    Unresolvable placeholders render as an empty string; resolution never
    raises.

    Example:
        >>> resolver = TemplateResolver()
        >>> context = ExecutionContext(form_data={"name": "Dana"})
        >>> resolver.resolve("Hello {{ name }}!", context)
        'Hello Dana!'
    """

    def resolve(self, template: str, context: ExecutionContext | Mapping[str, Any]) -> str:
        if not isinstance(template, str) or "{{" not in template:
            return template
        mapping = as_mapping(context)
        return PLACEHOLDER.sub(lambda match: format_value(resolve_field(match.group(1), mapping)), template)

    def resolve_object(self, obj: Any, context: ExecutionContext | Mapping[str, Any]) -> Any:
        """Resolve every string inside ``obj``.

        Args:
            obj: A string, mapping, list, tuple or any other value.
            context: The execution context.

        Returns:
            A new structure with strings resolved; other values are passed
            through unchanged.
        """
        mapping = as_mapping(context)
        return self._resolve(obj, mapping)

    def _resolve(self, obj: Any, mapping: dict[str, Any]) -> Any:
        if isinstance(obj, str):
            return self.resolve(obj, mapping)
        if isinstance(obj, Mapping):
            return {key: self._resolve(value, mapping) for key, value in obj.items()}
        if isinstance(obj, list):
            return [self._resolve(item, mapping) for item in obj]
        if isinstance(obj, tuple):
            return tuple(self._resolve(item, mapping) for item in obj)
        return obj
