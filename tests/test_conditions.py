"""
Condition evaluation tests
"""
import pytest
from datetime import datetime, timedelta

from clinic_automation.core import conditions


NOW = datetime(2026, 3, 2, 12, 0)


class TestConditions:

    @pytest.mark.parametrize("operator, value, expected", [
        ("contains", "vip", True),
        ("has_tag", "vip", True),
        ("has_tag", "new", False),
        ("not_has_tag", "new", True),
        ("not_has_tag", "vip", False),
    ])
    def test_tags(self, operator, value, expected):
        facts = {"tags": ["vip", "botox"]}
        assert conditions.evaluate("tags", operator, value, facts, NOW) is expected

    @pytest.mark.parametrize("operator, value, expected", [
        ("equals", "3", True),
        ("not_equals", "3", False),
        ("greater_than", "2", True),
        ("less_than", "3", False),
        ("greater_than", "not-a-number", False),
    ])
    def test_appointment_count(self, operator, value, expected):
        facts = {"appointment_count": 3}
        assert conditions.evaluate("appointment_count", operator, value, facts, NOW) is expected

    @pytest.mark.parametrize("value, expected", [
        ("2.0", True),
        (2.9, True),
        ("2 visits", True),
        ("3 visits", False),
        (" 2", True),
        ("", False),
        (None, False),
    ])
    def test_numeric_value_uses_leading_integer(self, value, expected):
        facts = {"appointment_count": 2}
        assert conditions.evaluate("appointment_count", "equals", value, facts, NOW) is expected

    def test_day_threshold_uses_leading_integer(self):
        facts = {"last_appointment_date": NOW - timedelta(days=10)}
        assert conditions.evaluate("last_appointment_date", "greater_than", "7 days", facts, NOW)
        assert conditions.evaluate("last_appointment_date", "less_than", "10.5", facts, NOW) is False

    def test_string_comparison_is_case_insensitive(self):
        facts = {"appointment_type": "Botox Treatment"}
        assert conditions.evaluate("appointment_type", "equals", "botox treatment", facts, NOW)
        assert conditions.evaluate("appointment_type", "contains", "BOTOX", facts, NOW)
        assert not conditions.evaluate("appointment_type", "not_equals", "BOTOX TREATMENT", facts, NOW)

    def test_missing_string_compares_as_empty(self):
        assert conditions.evaluate("client_status", "not_equals", "active", {}, NOW)
        assert not conditions.evaluate("client_status", "contains", "active", {}, NOW)

    def test_last_appointment_date_counts_whole_days(self):
        facts = {"last_appointment_date": NOW - timedelta(days=30, hours=23)}
        assert conditions.evaluate("last_appointment_date", "greater_than", "29", facts, NOW)
        assert not conditions.evaluate("last_appointment_date", "greater_than", "30", facts, NOW)
        assert conditions.evaluate("last_appointment_date", "less_than", "31", facts, NOW)

    def test_no_last_appointment_is_false(self):
        facts = {"last_appointment_date": None}
        assert not conditions.evaluate("last_appointment_date", "greater_than", "0", facts, NOW)
        assert not conditions.evaluate("last_appointment_date", "less_than", "1000", facts, NOW)

    def test_operator_outside_category_is_false(self):
        facts = {"tags": ["vip"]}
        assert conditions.evaluate("tags", "greater_than", "vip", facts, NOW) is False
        assert conditions.evaluate("last_appointment_date", "equals", "3", facts, NOW) is False

    def test_unknown_field_raises(self):
        assert not conditions.is_known_field("favorite_color")
        with pytest.raises(KeyError):
            conditions.evaluate("favorite_color", "equals", "blue", {}, NOW)

    def test_operators_for(self):
        assert conditions.operators_for("appointment_count") == (
            "equals", "not_equals", "greater_than", "less_than"
        )
        assert conditions.operators_for("unknown") == ()
