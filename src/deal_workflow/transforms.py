"""
Field value transforms for document export.

Deal data is stored in canonical (raw) form: 150000, 2024-01-15,
5551234567. Templates attach transform rules to their merge tags, and the
resolver unions those rules per field; they are applied here only when
values leave the system for document merge or display.

Unknown rule names pass the value through unchanged.
"""

import math
import re
from collections.abc import Callable, Iterable
from enum import Enum

from .calculation import parse_finite_number, parse_iso_date


class TransformRule(str, Enum):
    CURRENCY = 'currency'
    CURRENCY_WORDS = 'currency_words'
    DATE_MMDDYYYY = 'date_mmddyyyy'
    DATE_LONG = 'date_long'
    DATE_SHORT = 'date_short'
    UPPERCASE = 'uppercase'
    TITLECASE = 'titlecase'
    LOWERCASE = 'lowercase'
    PERCENTAGE = 'percentage'
    PHONE = 'phone'
    SSN_MASKED = 'ssn_masked'


_ONES = ['', 'One', 'Two', 'Three', 'Four', 'Five', 'Six', 'Seven', 'Eight', 'Nine']
_TEENS = [
    'Ten', 'Eleven', 'Twelve', 'Thirteen', 'Fourteen',
    'Fifteen', 'Sixteen', 'Seventeen', 'Eighteen', 'Nineteen',
]
_TENS = ['', '', 'Twenty', 'Thirty', 'Forty', 'Fifty', 'Sixty', 'Seventy', 'Eighty', 'Ninety']
_SCALES = ['', 'Thousand', 'Million', 'Billion', 'Trillion']

_WORD_PATTERN = re.compile(r'\w\S*')
_NON_DIGIT = re.compile(r'\D')
_NON_NUMERIC = re.compile(r'[^0-9.\-]')


# =============================================================================
# Formatters
# =============================================================================


def format_currency(value: str) -> str:
    """150000 -> $150,000.00"""
    number = parse_finite_number(value)
    if number is None:
        return ''
    sign = '-' if number < 0 else ''
    return f'{sign}${abs(number):,.2f}'


def number_to_words(number: int) -> str:
    """Spell out a whole number: 1205 -> One Thousand Two Hundred Five."""
    if number == 0:
        return 'Zero'
    if number < 0:
        return 'Negative ' + number_to_words(-number)

    words = ''
    scale = 0
    while number > 0:
        chunk = number % 1000
        if chunk:
            part = ''
            if chunk >= 100:
                part += _ONES[chunk // 100] + ' Hundred '
            remainder = chunk % 100
            if 10 <= remainder < 20:
                part += _TEENS[remainder - 10] + ' '
            else:
                if remainder >= 20:
                    part += _TENS[remainder // 10] + ' '
                if remainder % 10:
                    part += _ONES[remainder % 10] + ' '
            words = part + _SCALES[scale] + ' ' + words
        number //= 1000
        scale += 1
    return ' '.join(words.split())


def format_currency_words(value: str) -> str:
    """150000.5 -> One Hundred Fifty Thousand and 50/100 Dollars"""
    number = parse_finite_number(value)
    if number is None:
        return ''
    dollars = math.floor(number)
    cents = round((number - dollars) * 100)
    return f'{number_to_words(dollars)} and {cents:02d}/100 Dollars'


def _format_date(value: str, pattern: str) -> str:
    parsed = parse_iso_date(value)
    if parsed is None:
        return ''
    return parsed.strftime(pattern)


def format_date_mmddyyyy(value: str) -> str:
    return _format_date(value, '%m/%d/%Y')


def format_date_long(value: str) -> str:
    """2024-01-05 -> January 5, 2024"""
    parsed = parse_iso_date(value)
    if parsed is None:
        return ''
    return f'{parsed:%B} {parsed.day}, {parsed.year}'


def format_date_short(value: str) -> str:
    """2024-01-05 -> Jan 5, 2024"""
    parsed = parse_iso_date(value)
    if parsed is None:
        return ''
    return f'{parsed:%b} {parsed.day}, {parsed.year}'


def format_titlecase(value: str) -> str:
    return _WORD_PATTERN.sub(lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), value)


def format_percentage(value: str, decimals: int = 3) -> str:
    """8.25 -> 8.250%"""
    number = parse_finite_number(value)
    if number is None:
        return ''
    return f'{number:.{decimals}f}%'


def format_phone(value: str) -> str:
    """Ten-digit US numbers as (555) 123-4567; anything else unchanged."""
    digits = _NON_DIGIT.sub('', value)
    if len(digits) == 10:
        return f'({digits[:3]}) {digits[3:6]}-{digits[6:]}'
    if len(digits) == 11 and digits[0] == '1':
        return f'+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}'
    return value


def format_ssn_masked(value: str) -> str:
    """Show only the last four digits of a nine-digit SSN."""
    digits = _NON_DIGIT.sub('', value)
    if len(digits) == 9:
        return f'XXX-XX-{digits[5:]}'
    return value


_TRANSFORMS: dict[TransformRule, Callable[[str], str]] = {
    TransformRule.CURRENCY: format_currency,
    TransformRule.CURRENCY_WORDS: format_currency_words,
    TransformRule.DATE_MMDDYYYY: format_date_mmddyyyy,
    TransformRule.DATE_LONG: format_date_long,
    TransformRule.DATE_SHORT: format_date_short,
    TransformRule.UPPERCASE: str.upper,
    TransformRule.TITLECASE: format_titlecase,
    TransformRule.LOWERCASE: str.lower,
    TransformRule.PERCENTAGE: format_percentage,
    TransformRule.PHONE: format_phone,
    TransformRule.SSN_MASKED: format_ssn_masked,
}


# =============================================================================
# Public API
# =============================================================================


def apply_transform(value: str | None, rule: TransformRule | str) -> str:
    """Apply one transform rule; blank input yields ''."""
    if not value:
        return ''
    try:
        transform = _TRANSFORMS[TransformRule(rule)]
    except ValueError:
        return value
    return transform(value)


def apply_transforms(value: str | None, rules: Iterable[TransformRule | str]) -> str:
    """Apply transform rules left to right."""
    result = value or ''
    for rule in rules:
        if not result:
            break
        result = apply_transform(result, rule)
    return result


def parse_to_canonical(value: str | None, data_type: str) -> str:
    """Strip display formatting from user input before storage."""
    if not value:
        return ''
    if data_type in ('currency', 'number', 'percentage'):
        return _NON_NUMERIC.sub('', value)
    if data_type == 'phone':
        return _NON_DIGIT.sub('', value)
    return value.strip()


def format_for_display(value: str | None, data_type: str) -> str:
    """Non-destructive preview formatting for entry forms."""
    if not value:
        return ''
    if data_type == 'currency':
        number = parse_finite_number(value)
        return value if number is None else f'{number:,.2f}'
    if data_type == 'percentage':
        number = parse_finite_number(value)
        return value if number is None else f'{number:.3f}'
    return value
