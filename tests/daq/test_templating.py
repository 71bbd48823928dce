# tests/daq/test_templating.py
from daq.templating import (
    Literal,
    Placeholder,
    render_structure,
    render_text,
    render_value,
    replace_parameters,
    tokenize,
)


class TestTokenize:
    """Test tokenize() function."""

    def test_mixed_text(self):
        """Test literals and placeholders are split in order."""
        assert tokenize("Run {id} - {description}") == [
            Literal("Run "),
            Placeholder("id"),
            Literal(" - "),
            Placeholder("description"),
        ]

    def test_braces_that_are_not_placeholders(self):
        """Test JSON-ish braces and invalid names stay literal."""
        assert tokenize('{"a": 1} {1abc}') == [Literal('{"a": 1} {1abc}')]

    def test_empty(self):
        assert tokenize("") == []


class TestRenderText:
    """Test render_text() function."""

    def test_unknown_placeholder_kept(self):
        """Test placeholders without a value are left untouched."""
        assert render_text("{known} {unknown}", {"known": "x"}) == "x {unknown}"

    def test_values_are_not_rescanned(self):
        """Test a substituted value containing a placeholder is not expanded again."""
        assert render_text("{a}", {"a": "{b}", "b": "nope"}) == "{b}"

    def test_non_string_values_json_encoded(self):
        """Test dicts, bools and None are JSON-encoded inline; numbers use str()."""
        result = render_text("{d} {b} {n} {i}", {"d": {"v": 1}, "b": True, "n": None, "i": 7})
        assert result == '{"v": 1} true null 7'


class TestRenderValue:
    """Test render_value() function."""

    def test_whole_field_placeholder_keeps_type(self):
        """Test a field that is exactly one placeholder yields the raw value."""
        assert render_value("{parameterValues}", {"parameterValues": {"v": 1}}) == {"v": 1}
        assert render_value("{id}", {"id": 7}) == 7

    def test_whole_field_unknown_placeholder(self):
        assert render_value("{missing}", {}) == "{missing}"


class TestRenderStructure:
    """Test render_structure() function."""

    def test_webhook_message_example(self):
        """Test textual substitution inside a nested template."""
        template = {"msg": "Run {id} - {description}"}
        assert render_structure(template, {"id": 7, "description": "Cal run"}) == {"msg": "Run 7 - Cal run"}

    def test_typed_substitution_in_nested_structures(self):
        """Test raw values are placed in dicts and lists, other types pass through."""
        template = {"params": "{parameterValues}", "list": ["{id}", 3, None], "flag": False}
        result = render_structure(template, {"parameterValues": {"v": 1}, "id": 7})
        assert result == {"params": {"v": 1}, "list": [7, 3, None], "flag": False}


class TestReplaceParameters:
    """Test replace_parameters() function."""

    def test_names_are_upper_cased(self):
        """Test parameter names match upper-case placeholders."""
        assert replace_parameters("voltage = {VOLTAGE}", {"voltage": "1200"}) == "voltage = 1200"

    def test_none_values_skipped(self):
        """Test None values leave the placeholder in place."""
        assert replace_parameters("{A}{B}", {"a": None, "b": 2}) == "{A}2"
