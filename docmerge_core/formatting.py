"""
Value Formatting Catalog
Renders resolved field values as currency, numbers, percentages, dates, phones and text.
"""

import re
import json
import math
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, Optional

from .config import DEFAULT_CURRENCY_SYMBOL

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = '$£€¥₹'

_CURRENCY_LITERAL_RE = re.compile(
    r'^\s*(?P<sign>-)?\s*(?P<symbol>[' + CURRENCY_SYMBOLS + r'])\s*(?P<sign2>-)?\s*(?P<amount>[\d,]*\.?\d+)\s*$'
)
_US_DATE_RE = re.compile(r'^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*$')
_DIGITS_RE = re.compile(r'^\d+$')
_NON_DIGIT_RE = re.compile(r'\D')


class FormatError(ValueError):
    """A value cannot be rendered with the requested format"""


# =============================================================================
# NUMBERS
# =============================================================================

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        text = value.strip().replace(',', '')
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def format_currency(value: Any, symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    """
    Fixed two decimals with thousands grouping.

    A string that already carries a currency symbol is normalized with its own
    symbol instead of being prefixed a second time.
    """
    if isinstance(value, str):
        match = _CURRENCY_LITERAL_RE.match(value)
        if match:
            amount = float(match.group('amount').replace(',', ''))
            if match.group('sign') or match.group('sign2'):
                amount = -amount
            return _currency(amount, match.group('symbol'))

    number = _as_number(value)
    if number is None:
        return stringify(value)
    return _currency(number, symbol)


def _currency(amount: float, symbol: str) -> str:
    rendered = f"{abs(amount):,.2f}"
    if round(amount, 2) < 0:
        return f"-{symbol}{rendered}"
    return f"{symbol}{rendered}"


def format_number(value: Any) -> str:
    """Thousands grouping only; up to three fraction digits"""
    number = _as_number(value)
    if number is None:
        return stringify(value)
    if number.is_integer():
        return f"{int(number):,}"
    return f"{number:,.3f}".rstrip('0').rstrip('.')


def format_percent(value: Any) -> str:
    """
    Percentage with one or two decimals.

    Known ambiguity: a nonzero magnitude strictly between -1 and 1 is taken as
    a fraction and multiplied by 100, so 0.5 renders as 50.0%, never 0.5%.
    """
    number = _as_number(value)
    if number is None:
        return stringify(value)
    if number != 0 and -1 < number < 1:
        number *= 100

    rendered = f"{number:.2f}"
    if rendered.endswith('0'):
        rendered = rendered[:-1]
    return f"{rendered}%"


def format_fixed(value: Any, decimals: int) -> str:
    """Fixed decimal places, no grouping"""
    number = _as_number(value)
    if number is None:
        return stringify(value)
    return f"{number:.{decimals}f}"


# =============================================================================
# DATES
# =============================================================================

def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Accept datetime/date objects, ISO strings, MM/DD/YYYY and epoch milliseconds.

    Returns:
        Naive local datetime, or None when the value is not a recognizable date
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).astimezone().replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = _US_DATE_RE.match(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        try:
            return datetime(year, month, day)
        except ValueError:
            return None

    if _DIGITS_RE.match(text) and len(text) >= 11:
        return parse_datetime(int(text))

    iso = text[:-1] + '+00:00' if text.endswith('Z') else text
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _long_date(moment: datetime) -> str:
    return f"{moment.strftime('%B')} {moment.day}, {moment.year}"


def _clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = 'AM' if moment.hour < 12 else 'PM'
    return f"{hour}:{moment.minute:02d} {suffix}"


def format_date(value: Any) -> str:
    moment = parse_datetime(value)
    return _long_date(moment) if moment else stringify(value)


def format_datetime(value: Any) -> str:
    moment = parse_datetime(value)
    return f"{_long_date(moment)} {_clock(moment)}" if moment else stringify(value)


def format_time(value: Any) -> str:
    if isinstance(value, time):
        return _clock(datetime.combine(date.today(), value))
    moment = parse_datetime(value)
    return _clock(moment) if moment else stringify(value)


# =============================================================================
# TEXT
# =============================================================================

def format_phone(value: Any) -> str:
    """(555) 123-4567 for 10 digits or 11 with a leading 1; anything else unchanged"""
    text = stringify(value)
    digits = _NON_DIGIT_RE.sub('', text)

    if len(digits) == 11 and digits.startswith('1'):
        digits = digits[1:]
    elif len(digits) != 10:
        return text

    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def format_capitalize(value: Any) -> str:
    return ' '.join(word[:1].upper() + word[1:] for word in stringify(value).split(' '))


def format_yesno(value: Any) -> str:
    if isinstance(value, str):
        return 'Yes' if value.strip().lower() in ('true', 'yes', 'y', '1') else 'No'
    return 'Yes' if value else 'No'


def stringify(value: Any) -> str:
    """
    Type-generic rendering for values without an explicit or implicit format.

    Booleans become Yes/No, lists are comma-joined, mappings are dumped as
    JSON, dates use the long form, integral floats drop their ".0".
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.hour or value.minute or value.second:
            return format_datetime(value)
        return _long_date(value)
    if isinstance(value, date):
        return _long_date(datetime(value.year, value.month, value.day))
    if isinstance(value, time):
        return format_time(value)
    if isinstance(value, (list, tuple)):
        return ', '.join(stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, indent=2, default=str, ensure_ascii=False)
    return str(value)


FORMATTERS: Dict[str, Callable[[Any], str]] = {
    'number': format_number,
    'percent': format_percent,
    'percentage': format_percent,
    'date': format_date,
    'datetime': format_datetime,
    'time': format_time,
    'phone': format_phone,
    'uppercase': lambda v: stringify(v).upper(),
    'lowercase': lambda v: stringify(v).lower(),
    'capitalize': format_capitalize,
    'yesno': format_yesno,
    'text': stringify,
}


def is_known_format(fmt: str) -> bool:
    name = fmt.strip().lower()
    return name == 'currency' or name in FORMATTERS or bool(_DIGITS_RE.match(name))


def format_value(value: Any, fmt: Optional[str], currency_symbol: str = DEFAULT_CURRENCY_SYMBOL) -> str:
    """
    Render a resolved value.

    Args:
        value: Resolved field value
        fmt: Format directive such as "currency", "date", "2" (None = generic)
        currency_symbol: Symbol used when the value carries none

    Returns:
        Rendered string

    Raises:
        FormatError: for an unknown format directive
    """
    if not fmt:
        return stringify(value)

    name = fmt.strip().lower()
    if name == 'currency':
        return format_currency(value, currency_symbol)
    if _DIGITS_RE.match(name):
        return format_fixed(value, int(name))

    formatter = FORMATTERS.get(name)
    if formatter is None:
        raise FormatError(f"Unknown format '{fmt}'")
    return formatter(value)
