"""
Calculation engine for computed deal fields.

Derives date values from other field values using a narrow formula grammar
(unit words are case-insensitive, singular or plural):

- {base_field} + N months|days              -> static offset
- {base_field} + {other_field} months|days  -> offset by another field's number
- {base_field} + {other_field} + N months|days

Anything else is reported as "Unknown formula format" for that field only.

Fields are evaluated in ascending number of dependencies; each successful
result is written to a working copy of the values so that more-dependent
fields can consume it in the same pass. Cycles and multi-hop orderings are
not detected.

All functions are pure: inputs are never mutated and re-running on the same
snapshot yields equal results.
"""

import calendar
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

import structlog

from .models.calculation import CalculatedField, CalculationResult

logger = structlog.get_logger(__name__)

_UNIT = r'(months?|days?)'

# {field1} + {field2} months
_FIELD_ADD_PATTERN = re.compile(r'^\{([^}]+)\}\s*\+\s*\{([^}]+)\}\s*' + _UNIT + r'$', re.IGNORECASE)
# {field1} + {field2} + N days
_FIELD_AND_STATIC_PATTERN = re.compile(
    r'^\{([^}]+)\}\s*\+\s*\{([^}]+)\}\s*\+\s*(\d+)\s*' + _UNIT + r'$', re.IGNORECASE
)
# {field1} + N months
_STATIC_ADD_PATTERN = re.compile(r'^\{([^}]+)\}\s*\+\s*(\d+)\s*' + _UNIT + r'$', re.IGNORECASE)

_ISO_DATE_PATTERN = re.compile(r'^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$')


@dataclass(frozen=True)
class ParsedFormula:
    """A formula broken into its date-arithmetic parts."""

    unit: Literal['months', 'days']
    base_field: str
    addend_field: str | None
    static_value: int


def parse_formula(formula: str) -> ParsedFormula | None:
    """Parse a formula string; None when it matches no supported shape."""
    clean = formula.strip()

    match = _FIELD_ADD_PATTERN.match(clean)
    if match:
        return ParsedFormula(
            unit=_normalize_unit(match.group(3)),
            base_field=match.group(1),
            addend_field=match.group(2),
            static_value=0,
        )

    match = _FIELD_AND_STATIC_PATTERN.match(clean)
    if match:
        return ParsedFormula(
            unit=_normalize_unit(match.group(4)),
            base_field=match.group(1),
            addend_field=match.group(2),
            static_value=int(match.group(3)),
        )

    match = _STATIC_ADD_PATTERN.match(clean)
    if match:
        return ParsedFormula(
            unit=_normalize_unit(match.group(3)),
            base_field=match.group(1),
            addend_field=None,
            static_value=int(match.group(2)),
        )

    return None


def _normalize_unit(unit: str) -> Literal['months', 'days']:
    return 'months' if unit.lower().startswith('month') else 'days'


def parse_iso_date(value: str) -> date | None:
    """Parse yyyy-MM-dd (a trailing time part is ignored); None if invalid."""
    match = _ISO_DATE_PATTERN.match(value.strip())
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def parse_finite_number(value: str) -> float | None:
    try:
        number = float(value.strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def add_months(base: date, months: int) -> date:
    """Calendar month addition, clamping to the last day of the target month."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def dependencies_present(dependencies: list[str], values: Mapping[str, str | None]) -> bool:
    """True when every dependency has a non-blank value."""
    for dependency in dependencies:
        value = values.get(dependency)
        if value is None or value.strip() == '':
            return False
    return True


def compute_field(field: CalculatedField, values: Mapping[str, str | None]) -> CalculationResult:
    """
    Compute a single calculated field.

    Returns a waiting result (computed=False, no error) while dependencies are
    missing, and an error result when inputs are present but unusable.
    """
    key = field.field_key

    if not dependencies_present(field.calculation_dependencies, values):
        return CalculationResult(field_key=key)

    parsed = parse_formula(field.calculation_formula)
    if parsed is None:
        return CalculationResult(
            field_key=key,
            error=f'Unknown formula format: {field.calculation_formula}',
        )

    base_value = values.get(parsed.base_field)
    base_date = parse_iso_date(base_value) if base_value is not None else None
    if base_date is None:
        return CalculationResult(
            field_key=key,
            error=f'Invalid date value for {parsed.base_field}',
        )

    amount = parsed.static_value
    if parsed.addend_field:
        addend_value = values.get(parsed.addend_field)
        addend = parse_finite_number(addend_value) if addend_value is not None else None
        if addend is None:
            return CalculationResult(
                field_key=key,
                error=f'Invalid numeric value for {parsed.addend_field}',
            )
        amount += int(addend)

    try:
        if parsed.unit == 'months':
            result_date = add_months(base_date, amount)
        else:
            result_date = base_date + timedelta(days=amount)
    except (OverflowError, ValueError) as e:
        return CalculationResult(field_key=key, error=f'Calculation error: {e}')

    return CalculationResult(field_key=key, value=result_date.isoformat(), computed=True)


def compute_calculated_fields(
    fields: list[CalculatedField],
    values: Mapping[str, str | None],
) -> dict[str, CalculationResult]:
    """
    Compute every calculated field against a snapshot of values.

    Args:
        fields: Calculated field definitions
        values: Current field values keyed by field_key (not mutated)

    Returns:
        CalculationResult per field_key, in evaluation order
    """
    ordered = sorted(fields, key=lambda f: len(f.calculation_dependencies))
    working_values = dict(values)
    results: dict[str, CalculationResult] = {}

    for field in ordered:
        result = compute_field(field, working_values)
        results[field.field_key] = result
        if result.computed and result.value is not None:
            working_values[field.field_key] = result.value

    errors = sum(1 for r in results.values() if r.error)
    if errors:
        logger.debug('calculation.errors', error_count=errors, field_count=len(results))

    return results


def merge_calculated_values(
    values: Mapping[str, str],
    results: Mapping[str, CalculationResult],
) -> dict[str, str]:
    """
    Overlay successfully computed values onto a copy of values.

    Failed or waiting results leave whatever value was already stored.
    """
    merged = dict(values)
    for field_key, result in results.items():
        if result.computed and result.value is not None:
            merged[field_key] = result.value
    return merged


def get_calculation_errors(results: Mapping[str, CalculationResult]) -> list[tuple[str, str]]:
    """(field_key, error) pairs for every result that failed."""
    return [(r.field_key, r.error) for r in results.values() if r.error]
