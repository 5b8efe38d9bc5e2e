"""Tests for date token resolution and placement rules."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from discovery_engine.errors import InvalidConfigurationError, InvalidTokenPlacement
from discovery_engine.scheduling import tokens


class TestResolve:
    """Test token substitution."""

    def test_all_tokens(self):
        at = datetime(2024, 3, 5, 8, 1, tzinfo=timezone.utc)
        assert tokens.resolve("/reports/{yyyy}/{mm}/{dd}", at) == "/reports/2024/03/05"
        assert tokens.resolve("sales_{yy}{mm}{dd}.csv", at) == "sales_240305.csv"

    def test_repeated_tokens(self):
        at = datetime(2024, 12, 31, tzinfo=timezone.utc)
        assert tokens.resolve("{yyyy}/{yyyy}-{mm}", at) == "2024/2024-12"

    def test_unrecognized_placeholders_are_literal(self):
        at = datetime(2024, 3, 5, tzinfo=timezone.utc)
        assert tokens.resolve("{YYYY}_{foo}_{yyyy}", at) == "{YYYY}_{foo}_2024"

    def test_naive_treated_as_utc(self):
        assert tokens.resolve("{dd}", datetime(2024, 3, 5, 23, 59)) == "05"

    def test_aware_value_normalized_to_utc(self):
        # Just after midnight in Berlin on New Year's Day is still Dec 31 in UTC
        at = datetime(2024, 1, 1, 0, 30, tzinfo=ZoneInfo("Europe/Berlin"))
        assert tokens.resolve("{yyyy}{mm}{dd}", at) == "20231231"

    def test_leap_day(self):
        at = datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
        assert tokens.resolve("{yyyy}{mm}{dd}", at) == "20240229"

    def test_year_boundary(self):
        before = datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)
        after = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert tokens.resolve("rpt_{yy}{mm}{dd}.csv", before) == "rpt_241231.csv"
        assert tokens.resolve("rpt_{yy}{mm}{dd}.csv", after) == "rpt_250101.csv"
        assert tokens.resolve("/{yyyy}/{mm}", after) == "/2025/01"

    def test_pattern_without_tokens(self):
        at = datetime(2024, 3, 5, tzinfo=timezone.utc)
        assert tokens.resolve("/static/file.csv", at) == "/static/file.csv"


class TestPlacement:
    """Test validation of where tokens may appear."""

    def test_token_in_host_rejected(self):
        with pytest.raises(InvalidTokenPlacement):
            tokens.validate_pattern("https://{yyyy}.example.com/f.csv", "path_pattern")

    def test_token_in_path_accepted(self):
        tokens.validate_pattern("https://example.com/{yyyy}/f.csv", "path_pattern")

    def test_protocol_relative_host_rejected(self):
        with pytest.raises(InvalidTokenPlacement):
            tokens.validate_pattern("//files-{yy}.example.com/out", "path_pattern")

    def test_plain_path_accepted(self):
        tokens.validate_pattern("/exports/{yyyy}/{mm}", "path_pattern")

    def test_invalid_placement_is_configuration_error(self):
        assert issubclass(InvalidTokenPlacement, InvalidConfigurationError)

    def test_host_setting_rejected(self):
        with pytest.raises(InvalidTokenPlacement):
            tokens.validate_host("reports-{yyyy}", "bucket")
        tokens.validate_host("reports", "bucket")

    def test_unrecognized_placeholders(self):
        assert tokens.unrecognized_placeholders("{foo}/{yyyy}/{MM}") == ["{foo}", "{MM}"]
        assert tokens.unrecognized_placeholders("{yyyy}") == []
