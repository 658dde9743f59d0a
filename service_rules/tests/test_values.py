"""
Unit tests for rule value coercion.
"""

import pytest
from decimal import Decimal

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_rules.app.rules.resolver import MISSING
from service_rules.app.rules.values import RuleValue, ValueKind, compare_numbers, values_equal


class TestRuleValue:
    """Test cases for RuleValue."""

    @pytest.mark.parametrize("raw,kind", [
        (MISSING, ValueKind.MISSING),
        (None, ValueKind.NULL),
        (True, ValueKind.BOOLEAN),
        (3, ValueKind.NUMBER),
        (2.5, ValueKind.NUMBER),
        (Decimal("1.5"), ValueKind.NUMBER),
        ("text", ValueKind.STRING),
        ([1, 2], ValueKind.LIST),
        ((1, 2), ValueKind.LIST),
        ({"a": 1}, ValueKind.MAPPING),
        (object(), ValueKind.OTHER),
    ])
    def test_kind_detection(self, raw, kind):
        """Test that raw values are tagged with the right kind."""
        assert RuleValue.of(raw).kind is kind

    def test_numeric_strings_parse(self):
        """Test numeric views of strings."""
        assert RuleValue.of("42").as_number() == 42.0
        assert RuleValue.of(" 3.5 ").as_number() == 3.5
        assert RuleValue.of("abc").as_number() is None
        assert RuleValue.of("").as_number() is None

    def test_non_finite_numbers_are_not_numeric(self):
        """Test NaN and infinity have no numeric view."""
        assert RuleValue.of(float("nan")).as_number() is None
        assert RuleValue.of("inf").as_number() is None

    def test_booleans_are_not_numeric(self):
        """Test that booleans never compare numerically."""
        assert RuleValue.of(True).as_number() is None
        assert RuleValue.of(True).as_text() == "true"
        assert RuleValue.of(False).as_text() == "false"

    def test_integral_numbers_render_without_fraction(self):
        """Test text view of integral floats."""
        assert RuleValue.of(5.0).as_text() == "5"
        assert RuleValue.of(5.25).as_text() == "5.25"

    def test_numeric_view_is_exact(self):
        """Test large integers and long numeric strings keep every digit."""
        assert RuleValue.of(2 ** 53 + 1).as_number() == Decimal(9007199254740993)
        assert RuleValue.of("9007199254740993").as_number() == Decimal("9007199254740993")
        assert RuleValue.of(10 ** 400).as_number() == Decimal(10) ** 400
        assert RuleValue.of(0.1).as_number() == Decimal("0.1")


class TestValuesEqual:
    """Test cases for values_equal."""

    def test_numeric_coercion(self):
        """Test numbers and numeric strings compare numerically."""
        assert values_equal(1, "1")
        assert values_equal("1.0", 1)
        assert values_equal(2, 2.0)
        assert not values_equal(1, "2")

    def test_string_comparison_is_case_sensitive(self):
        """Test that strings compare exactly."""
        assert values_equal("URGENT", "URGENT")
        assert not values_equal("urgent", "URGENT")

    def test_null_equals_only_null(self):
        """Test null semantics."""
        assert values_equal(None, None)
        assert not values_equal(None, "")
        assert not values_equal(0, None)

    def test_missing_never_equal(self):
        """Test MISSING equals nothing, not even itself."""
        assert not values_equal(MISSING, MISSING)
        assert not values_equal(MISSING, None)

    def test_structural_equality(self):
        """Test lists and mappings compare structurally."""
        assert values_equal([1, "a"], ["1", "a"])
        assert not values_equal([1, 2], [2, 1])
        assert values_equal({"zone": "A", "bay": 3}, {"bay": "3", "zone": "A"})
        assert not values_equal({"zone": "A"}, {"zone": "B"})
        assert not values_equal([1], {"0": 1})

    def test_boolean_and_text(self):
        """Test booleans compare through their text form."""
        assert values_equal(True, "true")
        assert not values_equal(True, 1)


class TestCompareNumbers:
    """Test cases for compare_numbers."""

    def test_three_way_comparison(self):
        """Test ordering results."""
        assert compare_numbers(1, 2) == -1
        assert compare_numbers("10", 2) == 1
        assert compare_numbers(3, 3.0) == 0

    def test_large_values_keep_precision(self):
        """Test ordering of values that differ beyond float precision."""
        assert compare_numbers(2 ** 53 + 1, 2 ** 53) == 1
        assert compare_numbers("9007199254740992", "9007199254740993") == -1
        assert compare_numbers(10 ** 400, 10 ** 400) == 0

    def test_non_numeric(self):
        """Test non-numeric operands yield None."""
        assert compare_numbers("abc", 1) is None
        assert compare_numbers(1, None) is None
        assert compare_numbers(True, 1) is None
