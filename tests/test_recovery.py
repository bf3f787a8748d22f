"""
Unit tests for response recovery.

Tests fence stripping, value anchoring, repairs and fragment salvage.
"""

import json

import pytest

from ai_gateway.core.recovery import (
    anchor_first_value,
    missing_fields,
    parse_ai_response,
    repair_json,
    salvage_fragments,
    strip_code_fences,
)
from ai_gateway.core.types import ErrorKind


class TestWellFormedInput:
    """Test that valid JSON is returned unchanged."""

    @pytest.mark.parametrize("value", [
        {"title": "Senior Software Engineer", "company": "Acme"},
        [{"name": "Python"}, {"name": "SQL"}],
        {"nested": {"list": [1, 2.5, None, True], "text": "a \"quoted\" } brace"}},
        "plain string",
        42,
    ])
    def test_plain_json(self, value):
        """Test strict JSON parses to the same value."""
        text = json.dumps(value)
        result = parse_ai_response(text)

        assert result.success is True
        assert result.value == value
        assert result.repairs == []

    def test_fenced_json(self):
        """Test ```json fences are removed before parsing."""
        text = '```json\n{"title": "Engineer", "company": "Acme"}\n```'
        result = parse_ai_response(text)

        assert result.success is True
        assert result.value == {"title": "Engineer", "company": "Acme"}
        assert result.repairs == ["stripped_fences"]

    def test_bare_fences(self):
        """Test fences without a language tag."""
        result = parse_ai_response('```\n[1, 2, 3]\n```')

        assert result.success is True
        assert result.value == [1, 2, 3]

    def test_strip_code_fences_leaves_plain_text(self):
        """Test text without fences is only trimmed."""
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


class TestAnchoring:
    """Test extraction of the first value from surrounding prose."""

    def test_prose_around_object(self):
        """Test commentary before and after the value is ignored."""
        text = 'Here is the data you asked for: {"a": 1, "b": "x}"} Hope this helps!'
        result = parse_ai_response(text)

        assert result.success is True
        assert result.value == {"a": 1, "b": "x}"}
        assert "anchored_value" in result.repairs

    def test_anchor_picks_earliest_bracket(self):
        """Test an array opening before an object wins."""
        assert anchor_first_value('result: [1, {"a": 2}] done') == '[1, {"a": 2}]'

    def test_anchor_without_value(self):
        """Test text with no brackets has no anchor."""
        assert anchor_first_value("no json here") is None

    def test_escaped_quotes_inside_strings(self):
        """Test escaped quotes do not end a string or expose its brackets."""
        result = parse_ai_response('{"a": "say \\"}{\\" ok"} {"b": 2}')

        assert result.success is True
        assert result.value == {"a": 'say "}{" ok'}

    def test_anchor_escaped_quote(self):
        """Test the anchor skips brackets behind escaped quotes."""
        assert anchor_first_value('x {"q": "\\"[\\""} y') == '{"q": "\\"[\\""}'

    @pytest.mark.parametrize("text, expected", [
        ('[1, 2] [3]', [1, 2]),
        ('{"a": 1} {"b": 2}', {"a": 1}),
        ('{"a": 1} {"b":', {"a": 1}),
        ('Result: {"a": 1}\nAlternative: {"a": 2}', {"a": 1}),
    ])
    def test_first_of_several_values(self, text, expected):
        """Test only the first complete top-level value is used."""
        result = parse_ai_response(text)

        assert result.success is True
        assert result.value == expected

    def test_anchor_truncated_returns_rest(self):
        """Test an unclosed value yields the rest of the text."""
        assert anchor_first_value('note {"a": [1, 2') == '{"a": [1, 2'


class TestRepairs:
    """Test the defect repairs."""

    def test_trailing_commas(self):
        """Test trailing commas before closers are removed."""
        text = '{"skills": ["python", "sql",], "years": 5,}'
        result = parse_ai_response(text)

        assert result.success is True
        assert result.value == {"skills": ["python", "sql"], "years": 5}
        assert "trailing_commas" in result.repairs

    def test_trailing_commas_do_not_change_value(self):
        """Test the result is insensitive to trailing commas."""
        clean = '{"a": [1, 2], "b": {"c": 3}}'
        dirty = '{"a": [1, 2,], "b": {"c": 3,},}'

        assert parse_ai_response(dirty).value == json.loads(clean)

    def test_comma_inside_string_preserved(self):
        """Test commas inside strings are not touched."""
        text, repairs = repair_json('{"a": "x,]", "b": 1,}')

        assert json.loads(text) == {"a": "x,]", "b": 1}
        assert repairs == ["trailing_commas"]

    def test_truncated_mid_string(self):
        """Test an unterminated string is closed along with its object."""
        result = parse_ai_response('{"title": "Senior Eng')

        assert result.success is True
        assert result.value == {"title": "Senior Eng"}
        assert "closed_string" in result.repairs
        assert "closed_brackets" in result.repairs

    def test_truncated_after_key(self):
        """Test a dangling key gets a null value."""
        result = parse_ai_response('{"title": "Engineer", "company"')

        assert result.success is True
        assert result.value == {"title": "Engineer", "company": None}
        assert "null_trailing_value" in result.repairs

    def test_truncated_after_colon(self):
        """Test a dangling colon gets a null value."""
        result = parse_ai_response('{"title": "Engineer", "company":')

        assert result.value == {"title": "Engineer", "company": None}

    def test_truncated_literal(self):
        """Test a partial bare literal is replaced with null."""
        result = parse_ai_response('{"remote": tr')

        assert result.value == {"remote": None}

    def test_truncated_number_kept(self):
        """Test a complete number at the cut is kept."""
        result = parse_ai_response('{"min": 150000, "max": 2000')

        assert result.value == {"min": 150000, "max": 2000}

    def test_truncated_nested(self):
        """Test several levels of unclosed containers."""
        result = parse_ai_response('{"a": {"b": [1, 2, {"c": "d')

        assert result.success is True
        assert result.value == {"a": {"b": [1, 2, {"c": "d"}]}}

    def test_truncated_after_comma(self):
        """Test a trailing comma at the cut is dropped."""
        result = parse_ai_response('[{"name": "Python"}, ')

        assert result.value == [{"name": "Python"}]

    @pytest.mark.parametrize("text", [
        '{"a": "unterminated \\',
        '{"a": [',
        '{{{{',
        ']]]}}}',
        '{"a": 1} {"b":',
        '"\\u12',
        '{"a" "b" "c"',
        '[,,,]',
    ])
    def test_never_raises(self, text):
        """Test malformed input always produces a result."""
        result = parse_ai_response(text)

        assert result.success in (True, False)
        if not result.success:
            assert result.error.kind == ErrorKind.PARSING_ERROR

    @pytest.mark.parametrize("text", [
        '[' * 100000,
        '[' * 5000 + ']' * 5000,
        '{"a": ' * 50000,
    ], ids=["unclosed", "balanced", "dangling-keys"])
    def test_deep_nesting_never_raises(self, text):
        """Test nesting beyond the decoder's depth is a parsing error."""
        result = parse_ai_response(text)

        if not result.success:
            assert result.error.kind == ErrorKind.PARSING_ERROR

    def test_deep_unclosed_nesting_fails(self):
        """Test unrecoverable deep nesting reports failure."""
        result = parse_ai_response('[' * 100000)

        assert result.success is False
        assert result.error.kind == ErrorKind.PARSING_ERROR


class TestSalvage:
    """Test salvage of self-contained objects."""

    BROKEN_LIST = '[{"name": "Python"}, {"name": "Go"} oops {"level": 2} {"name": "Rust"}]'

    def test_salvage_fragments_filters_required(self):
        """Test fragments lacking a required field are dropped."""
        fragments = salvage_fragments(self.BROKEN_LIST, ["name"])

        assert fragments == [{"name": "Python"}, {"name": "Go"}, {"name": "Rust"}]

    def test_salvage_escaped_quotes(self):
        """Test braces inside escaped strings do not split a fragment."""
        fragments = salvage_fragments('{"name": "a \\"}\\" b"} junk {"name": "c"}')

        assert fragments == [{"name": 'a "}" b'}, {"name": "c"}]

    def test_salvage_skips_empty_objects(self):
        """Test empty objects are never salvaged."""
        assert salvage_fragments('{} and {"a": 1}') == [{"a": 1}]

    def test_salvage_as_collection(self):
        """Test collection callers get the salvaged list."""
        result = parse_ai_response(self.BROKEN_LIST, ["name"], allow_collection=True)

        assert result.success is True
        assert result.salvaged is True
        assert [item["name"] for item in result.value] == ["Python", "Go", "Rust"]

    def test_salvage_empty_collection(self):
        """Test a collection with nothing to salvage is an empty list."""
        result = parse_ai_response("no structured data", allow_collection=True)

        assert result.success is True
        assert result.value == []

    def test_parsing_error_reports_salvage(self):
        """Test object callers get a parsing error with salvage details."""
        result = parse_ai_response(self.BROKEN_LIST, ["name"])

        assert result.success is False
        assert result.error.kind == ErrorKind.PARSING_ERROR
        assert result.error.details["salvaged_fragments"] == 3
        assert "salvage" in result.error.details["repairs"]

    def test_not_json(self):
        """Test plain prose is a parsing error with a snippet."""
        result = parse_ai_response("This is not valid JSON")

        assert result.success is False
        assert result.error.kind == ErrorKind.PARSING_ERROR
        assert result.error.raw_snippet == "This is not valid JSON"

    def test_snippet_truncated(self):
        """Test long raw text is truncated in the error."""
        result = parse_ai_response("x" * 2000)

        assert len(result.error.raw_snippet) == 503


class TestEmptyAndFields:
    """Test empty input and required field checks."""

    @pytest.mark.parametrize("text", [None, "", "   \n\t"])
    def test_empty_response(self, text):
        """Test empty output is its own error kind."""
        result = parse_ai_response(text)

        assert result.success is False
        assert result.error.kind == ErrorKind.EMPTY_RESPONSE

    def test_missing_fields(self):
        """Test None and empty values count as missing."""
        value = {"title": "Engineer", "company": "", "skills": [], "location": None}

        assert missing_fields(value, ["title", "company", "skills", "location", "salary"]) == [
            "company", "skills", "location", "salary"
        ]

    def test_missing_fields_non_object(self):
        """Test every field is missing from a non-object."""
        assert missing_fields(["a"], ["title"]) == ["title"]
