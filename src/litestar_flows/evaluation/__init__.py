"""Condition evaluation and template resolution.

Both components are pure and resolve dotted paths with the same rules.
"""

from __future__ import annotations

from litestar_flows.evaluation.conditions import ConditionEvaluator, cast_value, deep_equals
from litestar_flows.evaluation.paths import MISSING, resolve_field
from litestar_flows.evaluation.templates import TemplateResolver

__all__ = ["MISSING", "ConditionEvaluator", "TemplateResolver", "cast_value", "deep_equals", "resolve_field"]
