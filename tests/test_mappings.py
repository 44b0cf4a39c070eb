"""Tests for the user mapping table."""

import pytest

from logrelay.errors import ConfigError, MappingError
from logrelay.mappings import UserMapping, mask_identifier, parse_user_mappings


class TestResolve:
    def test_mapped_identifier_returns_display_name(self):
        mapping = UserMapping({"u123": "Alice"})
        assert mapping.resolve("u123") == "Alice"

    def test_unmapped_identifier_returns_itself(self):
        mapping = UserMapping({"u123": "Alice"})
        assert mapping.resolve("u999") == "u999"

    def test_entries_are_read_only(self):
        mapping = UserMapping({"u123": "Alice"})
        with pytest.raises(TypeError):
            mapping.entries["u456"] = "Bob"

    def test_source_dict_changes_do_not_leak_in(self):
        source = {"u123": "Alice"}
        mapping = UserMapping(source)
        source["u123"] = "Mallory"
        assert mapping.resolve("u123") == "Alice"

    def test_contains_and_len(self):
        mapping = UserMapping({"u123": "Alice", "u456": "Bob"})
        assert "u123" in mapping
        assert "u789" not in mapping
        assert len(mapping) == 2


class TestParseUserMappings:
    def test_json_object(self):
        mapping = parse_user_mappings('{"u123": "Alice", "u456": "Bob"}')
        assert mapping.resolve("u123") == "Alice"
        assert mapping.resolve("u456") == "Bob"

    def test_numeric_ids_stay_strings(self):
        mapping = parse_user_mappings('{"0123": "Alice", 76561198000000000: "Bob"}')
        assert mapping.resolve("0123") == "Alice"
        assert mapping.resolve("76561198000000000") == "Bob"

    def test_equals_pairs(self):
        mapping = parse_user_mappings("u123=Alice, u456=Bob")
        assert dict(mapping.entries) == {"u123": "Alice", "u456": "Bob"}

    def test_colon_pairs_and_newlines(self):
        mapping = parse_user_mappings("u123:Alice\nu456:Bob Smith\n")
        assert mapping.resolve("u456") == "Bob Smith"

    def test_duplicate_keeps_last(self):
        mapping = parse_user_mappings("u123=Alice,u123=Alicia")
        assert mapping.resolve("u123") == "Alicia"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_input_rejected(self, raw):
        with pytest.raises(MappingError):
            parse_user_mappings(raw)

    def test_entry_without_separator_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings("u123=Alice,bogus")

    def test_empty_name_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings("u123=")

    def test_empty_identifier_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings("=Alice")

    def test_invalid_json_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings('{"u123": "Alice"')

    def test_nested_value_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings('{"u123": {"name": "Alice"}}')

    def test_empty_object_rejected(self):
        with pytest.raises(MappingError):
            parse_user_mappings("{}")

    def test_mapping_error_is_config_error(self):
        with pytest.raises(ConfigError):
            parse_user_mappings("")


class TestMaskIdentifier:
    def test_keeps_last_four(self):
        assert mask_identifier("76561198000001234") == "****1234"

    def test_short_identifier_fully_masked(self):
        assert mask_identifier("u12") == "****"
