# =============================================================================
# Unit Tests: Reply Parsing
# =============================================================================
#
# Model replies arrive bare, fenced, or wrapped in prose. Parsing must
# never raise; failures come back as ParsedReply(ok=False).
# =============================================================================

import math

from docflow.services.replies import parse_json_reply, parse_score, strip_fences


class TestParseJsonReply:
    """Tests for parse_json_reply()."""

    def test_bare_object(self):
        parsed = parse_json_reply('{"score_value": 0.4}')
        assert parsed.ok
        assert parsed.data == {"score_value": 0.4}

    def test_fenced_object(self):
        parsed = parse_json_reply('```json\n{"answer": "yes"}\n```')
        assert parsed.ok
        assert parsed.data["answer"] == "yes"

    def test_fence_without_language(self):
        assert parse_json_reply('```\n{"a": 1}\n```').data == {"a": 1}

    def test_object_embedded_in_prose(self):
        parsed = parse_json_reply('Sure! Here it is: {"score_value": -0.2, "quotes": []} Hope that helps.')
        assert parsed.ok
        assert parsed.data["score_value"] == -0.2

    def test_no_object(self):
        parsed = parse_json_reply("I cannot score this document.")
        assert not parsed.ok
        assert parsed.error == "Reply contains no JSON object"
        assert parsed.raw == "I cannot score this document."

    def test_malformed_object(self):
        parsed = parse_json_reply('{"score_value": 0.4,,}')
        assert not parsed.ok
        assert parsed.error.startswith("Malformed JSON in reply")

    def test_array_is_not_an_object(self):
        parsed = parse_json_reply("[1, 2, 3]")
        assert not parsed.ok
        assert parsed.error == "Reply JSON is not an object"

    def test_missing_required_key(self):
        parsed = parse_json_reply('{"quotes": []}', required=("score_value",))
        assert not parsed.ok
        assert "score_value" in parsed.error

    def test_error_object_keeps_raw_text(self):
        parsed = parse_json_reply("nope")
        assert parsed.as_error_object() == {"error": "Reply contains no JSON object", "raw": "nope"}

    def test_empty_reply(self):
        assert not parse_json_reply("").ok


class TestStripFences:
    def test_plain_text_unchanged(self):
        assert strip_fences("hello") == "hello"

    def test_first_fence_body(self):
        assert strip_fences("intro ```json\n{}\n``` outro") == "{}"


class TestParseScore:
    """Tests for parse_score(): decimals in [-1, 1], never clamped."""

    def test_accepts_bounds_and_numeric_strings(self):
        assert parse_score(-1) == -1.0
        assert parse_score(1.0) == 1.0
        assert parse_score("0.35") == 0.35

    def test_rejects_out_of_range(self):
        assert parse_score(1.01) is None
        assert parse_score(-7) is None

    def test_rejects_non_numeric(self):
        assert parse_score("high") is None
        assert parse_score(None) is None
        assert parse_score([0.1]) is None

    def test_rejects_bool_and_nan(self):
        assert parse_score(True) is None
        assert parse_score(math.nan) is None
