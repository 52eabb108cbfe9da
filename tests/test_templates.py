"""Tests for template resolution."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from litestar_flows.core.context import ExecutionContext
from litestar_flows.evaluation import TemplateResolver


@pytest.fixture
def resolver() -> TemplateResolver:
    return TemplateResolver()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(
        form_data={"name": "Dana", "items": [1, 2], "address": {"city": "Lyon"}, "vip": True},
        variables={"total": 12.5, "due": datetime(2026, 4, 1, tzinfo=timezone.utc)},
        metadata={"instance_id": "abc"},
    )


@pytest.mark.unit
class TestTemplateResolver:
    """Tests for TemplateResolver."""

    def test_simple_placeholder(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        assert resolver.resolve("Hello {{ name }}!", context) == "Hello Dana!"
        assert resolver.resolve("Hello {{name}}!", context) == "Hello Dana!"

    def test_prefixed_paths(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        """Test placeholders use the same resolution as predicates."""
        template = "{{formData.address.city}}/{{variables.total}}/{{metadata.instance_id}}"
        assert resolver.resolve(template, context) == "Lyon/12.5/abc"

    def test_unresolved_renders_empty(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        """Test an unknown path renders as an empty string instead of raising."""
        assert resolver.resolve("[{{ missing.path }}]", context) == "[]"

    def test_value_formatting(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        """Test booleans, lists and datetimes are rendered in a stable format."""
        assert resolver.resolve("{{vip}}", context) == "true"
        assert resolver.resolve("{{items}}", context) == "[1, 2]"
        assert resolver.resolve("{{due}}", context) == "2026-04-01T00:00:00+00:00"

    def test_non_string_mapping_keys(self, resolver: TemplateResolver) -> None:
        """Test mappings keyed by tuples or numbers render instead of raising."""
        context = ExecutionContext(variables={"grid": {(1, 2): "x"}, "scores": {1: {"tags": {"a"}}}})

        assert resolver.resolve("cell={{ variables.grid }}", context) == 'cell={"[1, 2]": "x"}'
        assert resolver.resolve("{{ variables.scores }}", context) == '{"1": {"tags": ["a"]}}'

    def test_circular_structure_falls_back_to_str(self, resolver: TemplateResolver) -> None:
        loop: dict[str, object] = {}
        loop["self"] = loop
        context = ExecutionContext(variables={"loop": loop})

        assert resolver.resolve("{{ variables.loop }}", context) == str(loop)

    def test_no_placeholders_is_identity(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        text = "No placeholders { here }"
        assert resolver.resolve(text, context) is text
        assert resolver.resolve(resolver.resolve(text, context), context) == text

    def test_resolve_object(self, resolver: TemplateResolver, context: ExecutionContext) -> None:
        """Test nested structures are resolved and non-strings pass through."""
        config = {
            "to": "{{ name }}@example.com",
            "retries": 3,
            "enabled": False,
            "lines": ["Total: {{ total }}", {"city": "{{ address.city }}"}],
            "pair": ("{{ name }}", None),
        }
        resolved = resolver.resolve_object(config, context)
        assert resolved == {
            "to": "Dana@example.com",
            "retries": 3,
            "enabled": False,
            "lines": ["Total: 12.5", {"city": "Lyon"}],
            "pair": ("Dana", None),
        }
        assert config["to"] == "{{ name }}@example.com"
