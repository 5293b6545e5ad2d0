"""
Tests for ${...} substitution: dot paths, indexes, JSON decoding and fail-open
behaviour.
"""

import pytest

from stepflow.variables.substitution import (
    VariableSubstitutor,
    collect_references,
    contains_reference,
    extract_references,
    stringify,
)


class TestStringify:
    """Conversion of resolved values into inserted text."""

    @pytest.mark.parametrize("value,expected", [
        (True, "true"),
        (False, "false"),
        (None, "null"),
        (42, "42"),
        (1.5, "1.5"),
        ("text", "text"),
        (b"bytes", "bytes"),
        ({"a": 1}, '{"a": 1}'),
        ([1, "x"], '[1, "x"]'),
    ])
    def test_stringify(self, value, expected):
        assert stringify(value) == expected


class TestVariableSubstitutor:
    """Substitution of references in strings and nested values."""

    def setup_method(self):
        self.substitutor = VariableSubstitutor()

    def test_simple_reference(self):
        result = self.substitutor.substitute("Hello ${name}!", {"name": "World"})
        assert result == "Hello World!"

    def test_missing_reference_left_verbatim(self):
        """Unresolved tokens survive unchanged."""
        assert self.substitutor.substitute("${missing}", {}) == "${missing}"
        assert self.substitutor.substitute("a ${missing.field} b", {"x": 1}) == "a ${missing.field} b"

    def test_dot_path_into_dict(self):
        variables = {"user": {"profile": {"name": "Ada"}}}
        assert self.substitutor.substitute("${user.profile.name}", variables) == "Ada"

    def test_dot_path_into_json_string(self):
        """A JSON-encoded string is decoded when traversal needs a container."""
        variables = {"response": '{"body": {"id": 7}, "status_code": 200}'}
        assert self.substitutor.substitute("${response.body.id}", variables) == "7"
        assert self.substitutor.substitute("${response.status_code}", variables) == "200"

    def test_dot_path_into_json_bytes(self):
        variables = {"raw": b'{"ok": true}'}
        assert self.substitutor.substitute("${raw.ok}", variables) == "true"

    def test_index_access(self):
        variables = {"items": [{"id": "a"}, {"id": "b"}]}
        assert self.substitutor.substitute("${items[1].id}", variables) == "b"
        assert self.substitutor.substitute("${items.0.id}", variables) == "a"

    def test_negative_index_counts_from_end(self):
        variables = {"__steps": [{"error": "first"}, {"error": "last"}]}
        assert self.substitutor.substitute("${__steps[-1].error}", variables) == "last"

    def test_index_out_of_range_is_unresolved(self):
        variables = {"items": [1]}
        assert self.substitutor.substitute("${items[3]}", variables) == "${items[3]}"

    def test_dotted_variable_name_falls_back_to_direct_lookup(self):
        variables = {"db.host": "localhost"}
        assert self.substitutor.substitute("${db.host}", variables) == "localhost"

    def test_complex_value_becomes_json(self):
        variables = {"payload": {"a": [1, 2]}}
        assert self.substitutor.substitute("data=${payload}", variables) == 'data={"a": [1, 2]}'

    def test_substitute_recurses_into_lists_and_dicts(self):
        variables = {"host": "example.com", "key": "auth"}
        value = {"url": "https://${host}/", "${key}": ["${host}", 5]}
        result = self.substitutor.substitute(value, variables)
        assert result == {"url": "https://example.com/", "auth": ["example.com", 5]}

    def test_non_string_values_pass_through(self):
        assert self.substitutor.substitute(5, {"x": 1}) == 5
        assert self.substitutor.substitute(None, {}) is None

    def test_substitution_idempotent_on_resolved_text(self):
        variables = {"a": "1", "b": "${a}"}
        once = self.substitutor.substitute("${a}-${c}", variables)
        assert self.substitutor.substitute(once, variables) == once

    def test_lookup_returns_raw_value(self):
        variables = {"data": {"list": [1, 2, 3]}}
        assert self.substitutor.lookup("data.list", variables) == [1, 2, 3]
        assert self.substitutor.lookup("data.nothing", variables) is None

    def test_unresolved_lists_missing_references(self):
        result = self.substitutor.unresolved("${a} ${b} ${c.x}", {"a": 1})
        assert result == ["b", "c.x"]


class TestReferenceExtraction:
    """Dependency discovery used by the parallel scheduler."""

    def test_extract_base_names(self):
        text = "${user.name} and ${items[0].id} and ${user.email} ${plain}"
        assert extract_references(text) == ["user", "items", "plain"]

    def test_extract_ignores_non_strings(self):
        assert extract_references(42) == []

    def test_collect_references_nested(self):
        value = ["${a}", {"k": "${b.c}", "${d}": 1}, 3]
        assert collect_references(value) == {"a", "b", "d"}

    def test_contains_reference(self):
        assert contains_reference({"x": ["${y}"]})
        assert not contains_reference({"x": ["plain", 1]})
