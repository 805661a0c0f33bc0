"""
Tests for appdrop.services.normalizer.
"""

import json

from appdrop.services.normalizer import (
    EMPTY_CHANGELOG_MESSAGE,
    StructuredField,
    TextField,
    changelog_list,
    empty_changelog_placeholder,
    normalize_branch,
    normalize_changelog,
    normalize_custom_fields,
    raw_field,
)


class TestRawField:
    def test_json_array_text_is_structured(self):
        assert raw_field('[{"message": "a"}]') == StructuredField([{"message": "a"}])

    def test_json_object_text_is_structured(self):
        assert raw_field('{"k": 1}') == StructuredField({"k": 1})

    def test_plain_text_stays_text(self):
        assert raw_field("fix crash") == TextField("fix crash")

    def test_json_scalar_stays_text(self):
        assert raw_field("42") == TextField("42")
        assert raw_field('"quoted"') == TextField('"quoted"')

    def test_broken_json_stays_text(self):
        assert raw_field("[not json") == TextField("[not json")

    def test_none_is_empty_text(self):
        assert raw_field(None) == TextField("")

    def test_python_structures_pass_through(self):
        value = [{"message": "x"}]
        assert raw_field(value) == StructuredField(value)

    def test_already_tagged_is_unchanged(self):
        field = TextField("x")
        assert raw_field(field) is field


class TestNormalizeChangelog:
    def test_plain_text_split_into_messages(self):
        assert normalize_changelog("first\n\n  \nsecond\r\nthird") == [
            {"message": "first"},
            {"message": "second"},
            {"message": "third"},
        ]

    def test_empty_text_is_empty_list(self):
        assert normalize_changelog("") == []
        assert normalize_changelog("   \n ") == []
        assert normalize_changelog(None) == []

    def test_json_text_used_as_is(self):
        data = [{"message": "a", "author": "ci"}]
        assert normalize_changelog(json.dumps(data)) == data

    def test_structured_passes_through(self):
        data = {"notes": ["a", "b"]}
        assert normalize_changelog(data) == data

    def test_idempotent_on_canonical_list(self):
        canonical = normalize_changelog("one\ntwo")
        assert normalize_changelog(canonical) == canonical
        assert normalize_changelog(json.dumps(canonical)) == canonical


class TestNormalizeCustomFields:
    def test_json_text_is_parsed(self):
        assert normalize_custom_fields('[{"name": "env", "value": "qa"}]') == [
            {"name": "env", "value": "qa"}
        ]

    def test_plain_text_is_dropped(self):
        assert normalize_custom_fields("env=qa") == []

    def test_empty_is_empty_list(self):
        assert normalize_custom_fields(None) == []
        assert normalize_custom_fields("") == []

    def test_structured_passes_through(self):
        assert normalize_custom_fields({"env": "qa"}) == {"env": "qa"}


class TestPlaceholder:
    def test_default_placeholder(self):
        assert empty_changelog_placeholder() == [{"message": EMPTY_CHANGELOG_MESSAGE}]

    def test_suppressed_placeholder(self):
        assert empty_changelog_placeholder(False) == []

    def test_changelog_list_blank_uses_placeholder(self):
        assert changelog_list([]) == [{"message": EMPTY_CHANGELOG_MESSAGE}]
        assert changelog_list(None, use_default_changelog=False) == []

    def test_changelog_list_scalar_is_wrapped(self):
        assert changelog_list("legacy text") == [{"message": "legacy text"}]

    def test_changelog_list_structured_unchanged(self):
        data = [{"message": "a"}]
        assert changelog_list(data) is data


class TestNormalizeBranch:
    def test_strips_origin_prefix(self):
        assert normalize_branch("origin/main") == "main"
        assert normalize_branch("origin/feature/login") == "feature/login"

    def test_other_values_unchanged(self):
        assert normalize_branch("main") == "main"
        assert normalize_branch("upstream/origin/main") == "upstream/origin/main"

    def test_blank_passes_through(self):
        assert normalize_branch("") == ""
        assert normalize_branch(None) is None
