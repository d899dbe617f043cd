"""
Tests for the calculation engine.

Tests cover:
- The three formula shapes, case-insensitive singular/plural units
- Month-end clamping and day offsets
- Waiting (missing dependency) vs failed (bad input) results
- Per-field errors never abort the batch
- Dependency-count ordering with a working copy of values
- Purity and idempotent merge
"""

from datetime import date

import pytest

from deal_workflow.calculation import (
    add_months,
    compute_calculated_fields,
    compute_field,
    get_calculation_errors,
    merge_calculated_values,
    parse_formula,
    parse_iso_date,
)
from deal_workflow.models.calculation import CalculatedField


def _field(key: str, formula: str, deps: list[str]) -> CalculatedField:
    return CalculatedField(field_key=key, calculation_formula=formula, calculation_dependencies=deps)


MATURITY = _field(
    "maturity_date",
    "{first_payment_date} + {term_months} months",
    ["first_payment_date", "term_months"],
)


# =============================================================================
# Formula Parsing
# =============================================================================


class TestParseFormula:
    def test_field_plus_field(self):
        parsed = parse_formula("{a} + {b} months")

        assert parsed.base_field == "a"
        assert parsed.addend_field == "b"
        assert parsed.static_value == 0
        assert parsed.unit == "months"

    def test_field_plus_field_plus_static(self):
        parsed = parse_formula("{a} + {b} + 15 days")

        assert parsed.base_field == "a"
        assert parsed.addend_field == "b"
        assert parsed.static_value == 15
        assert parsed.unit == "days"

    def test_field_plus_static(self):
        parsed = parse_formula("  {closing_date}+30 Day ")

        assert parsed.base_field == "closing_date"
        assert parsed.addend_field is None
        assert parsed.static_value == 30
        assert parsed.unit == "days"

    @pytest.mark.parametrize("unit", ["month", "Months", "MONTHS", "Month"])
    def test_unit_is_case_insensitive(self, unit):
        assert parse_formula(f"{{a}} + 1 {unit}").unit == "months"

    @pytest.mark.parametrize(
        "formula",
        [
            "{a} - 1 months",
            "{a} + 1 years",
            "{a} * {b}",
            "today + 1 days",
            "{a} + {b} + {c} days",
            "",
        ],
    )
    def test_unsupported_shapes(self, formula):
        assert parse_formula(formula) is None


class TestDateHelpers:
    def test_month_end_clamping_leap_year(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_month_end_clamping_common_year(self):
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_month_addition_crosses_years(self):
        assert add_months(date(2024, 11, 15), 360) == date(2054, 11, 15)
        assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)

    def test_parse_iso_date(self):
        assert parse_iso_date("2024-02-29") == date(2024, 2, 29)
        assert parse_iso_date("2024-02-29T10:00:00Z") == date(2024, 2, 29)
        assert parse_iso_date("2023-02-29") is None
        assert parse_iso_date("02/29/2024") is None
        assert parse_iso_date("not-a-date") is None


# =============================================================================
# Single Field
# =============================================================================


class TestComputeField:
    def test_month_end_example(self):
        result = compute_field(MATURITY, {"first_payment_date": "2024-01-31", "term_months": "1"})

        assert result.computed is True
        assert result.value == "2024-02-29"
        assert result.error is None

    def test_missing_dependency_is_waiting_not_error(self):
        result = compute_field(MATURITY, {"term_months": "12"})

        assert result.computed is False
        assert result.value is None
        assert result.error is None
        assert result.is_waiting

    def test_blank_dependency_is_waiting(self):
        result = compute_field(MATURITY, {"first_payment_date": "   ", "term_months": "12"})

        assert result.is_waiting

    def test_invalid_date_is_error(self):
        result = compute_field(MATURITY, {"first_payment_date": "not-a-date", "term_months": "1"})

        assert result.computed is False
        assert result.error == "Invalid date value for first_payment_date"
        assert not result.is_waiting

    def test_invalid_number_is_error(self):
        result = compute_field(MATURITY, {"first_payment_date": "2024-01-31", "term_months": "twelve"})

        assert result.error == "Invalid numeric value for term_months"

    def test_non_finite_number_is_error(self):
        result = compute_field(MATURITY, {"first_payment_date": "2024-01-31", "term_months": "inf"})

        assert result.error == "Invalid numeric value for term_months"

    def test_unknown_formula_is_error(self):
        field = _field("x", "{a} * 2", ["a"])

        result = compute_field(field, {"a": "2024-01-01"})

        assert result.computed is False
        assert result.error == "Unknown formula format: {a} * 2"

    def test_fractional_addend_truncates_toward_zero(self):
        field = _field("due", "{start} + {offset} days", ["start", "offset"])

        assert compute_field(field, {"start": "2024-01-01", "offset": "2.9"}).value == "2024-01-03"
        assert compute_field(field, {"start": "2024-01-10", "offset": "-2.9"}).value == "2024-01-08"

    def test_field_plus_field_plus_static_days(self):
        field = _field("late", "{due} + {grace} + 5 days", ["due", "grace"])

        result = compute_field(field, {"due": "2024-02-25", "grace": "3"})

        assert result.value == "2024-03-04"

    def test_out_of_range_date_is_error(self):
        field = _field("far", "{start} + 1 days", ["start"])

        result = compute_field(field, {"start": "9999-12-31"})

        assert result.computed is False
        assert result.error.startswith("Calculation error:")


# =============================================================================
# Batch
# =============================================================================


class TestComputeCalculatedFields:
    def test_fewer_dependencies_evaluated_first_and_chained(self):
        """A field depending on another calculated field sees its fresh value."""
        first_payment = _field("first_payment_date", "{closing_date} + 1 months", ["closing_date"])
        fields = [MATURITY, first_payment]

        results = compute_calculated_fields(fields, {"closing_date": "2024-01-31", "term_months": "12"})

        assert list(results) == ["first_payment_date", "maturity_date"]
        assert results["first_payment_date"].value == "2024-02-29"
        assert results["maturity_date"].value == "2025-02-28"

    def test_one_bad_formula_does_not_block_others(self):
        bad = _field("bad", "{closing_date} ** 2", ["closing_date"])
        good = _field("good", "{closing_date} + 10 days", ["closing_date"])

        results = compute_calculated_fields([bad, good], {"closing_date": "2024-01-01"})

        assert results["bad"].error is not None
        assert results["good"].value == "2024-01-11"
        assert get_calculation_errors(results) == [("bad", "Unknown formula format: {closing_date} ** 2")]

    def test_input_values_not_mutated(self):
        values = {"first_payment_date": "2024-01-31", "term_months": "1"}
        snapshot = dict(values)

        compute_calculated_fields([MATURITY], values)

        assert values == snapshot

    def test_compute_is_idempotent(self):
        values = {"first_payment_date": "2024-01-31", "term_months": "1"}

        assert compute_calculated_fields([MATURITY], values) == compute_calculated_fields([MATURITY], values)

    def test_empty_input(self):
        assert compute_calculated_fields([], {"a": "1"}) == {}


class TestMergeCalculatedValues:
    def test_only_computed_results_overwrite(self):
        values = {"first_payment_date": "2024-01-31", "maturity_date": "2030-01-01", "other": "x"}
        bad = _field("bad_date", "{first_payment_date} + {missing} days", ["first_payment_date", "missing"])
        results = compute_calculated_fields([MATURITY, bad], values)

        merged = merge_calculated_values(values, results)

        # maturity_date is waiting on term_months: the stored value stays
        assert merged == values
        assert "bad_date" not in merged

    def test_merge_is_idempotent(self):
        values = {"first_payment_date": "2024-01-31", "term_months": "1"}
        results = compute_calculated_fields([MATURITY], values)

        once = merge_calculated_values(values, results)
        twice = merge_calculated_values(once, results)

        assert once == twice
        assert once["maturity_date"] == "2024-02-29"
        assert "maturity_date" not in values
