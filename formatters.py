"""
Display formatting for amounts and dates.

- format_currency: Moroccan dirham amounts, fr-MA conventions ("1.234,56 MAD")
- format_date: stored instants as dd/mm/yyyy
- amount_to_french_words: amounts in French prose for printed documents
"""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

Number = Union[int, float, Decimal]

CURRENCY_CODE = "MAD"
GROUP_SEPARATOR = "."
DECIMAL_SEPARATOR = ","

UNITS = ["", "un", "deux", "trois", "quatre", "cinq", "six", "sept", "huit", "neuf"]
TEENS = ["dix", "onze", "douze", "treize", "quatorze", "quinze", "seize", "dix-sept", "dix-huit", "dix-neuf"]
TENS = ["", "dix", "vingt", "trente", "quarante", "cinquante", "soixante", "soixante-dix", "quatre-vingt",
        "quatre-vingt-dix"]


def _to_cents(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    if not value.is_finite():
        return Decimal("0.00")
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_number(number: Number, decimal_places: int = 2) -> str:
    """
    Format a number with fr-MA separators.

    Examples:
        >>> format_number(1234567.891)
        '1.234.567,89'
    """
    value = _to_cents(number) if decimal_places == 2 else Decimal(str(number))
    formatted = f"{abs(value):.{decimal_places}f}"
    if "." in formatted:
        integer_part, decimal_part = formatted.split(".")
    else:
        integer_part, decimal_part = formatted, None

    groups = []
    for i in range(len(integer_part), 0, -3):
        groups.insert(0, integer_part[max(0, i - 3):i])
    integer_part = GROUP_SEPARATOR.join(groups)

    sign = "-" if value < 0 else ""
    if decimal_part:
        return f"{sign}{integer_part}{DECIMAL_SEPARATOR}{decimal_part}"
    return f"{sign}{integer_part}"


def format_currency(amount) -> str:
    """Anything that is not a number is shown as zero."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        amount = 0
    return f"{format_number(amount)} {CURRENCY_CODE}"


def format_date(value: Optional[Union[datetime, date, int, float]]) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, (int, float)):
        # epoch milliseconds
        value = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return value.strftime("%d/%m/%Y")


def _below_hundred(num: int, plural: bool) -> str:
    if num < 10:
        return UNITS[num]
    if num < 20:
        return TEENS[num - 10]
    t, u = divmod(num, 10)
    if t in (7, 9):
        # soixante-dix.., quatre-vingt-dix..
        if t == 7 and u == 1:
            return "soixante-et-onze"
        return f"{TENS[t - 1]}-{TEENS[u]}"
    if t == 8:
        if u == 0:
            return "quatre-vingts" if plural else "quatre-vingt"
        return f"quatre-vingt-{UNITS[u]}"
    if u == 0:
        return TENS[t]
    if u == 1:
        return f"{TENS[t]}-et-un"
    return f"{TENS[t]}-{UNITS[u]}"


def _group_to_words(num: int, plural: bool = True) -> str:
    """Words for 1..999. `plural` is False when the group multiplies mille."""
    words = []
    h, rest = divmod(num, 100)
    if h:
        if h == 1:
            words.append("cent")
        elif rest == 0 and plural:
            words.append(f"{UNITS[h]} cents")
        else:
            words.append(f"{UNITS[h]} cent")
    if rest:
        words.append(_below_hundred(rest, plural))
    return " ".join(words)


def integer_to_french_words(n: int) -> str:
    if n == 0:
        return "zéro"
    parts = []
    milliards, n = divmod(n, 1_000_000_000)
    if milliards:
        # more than 999 milliards is spelled recursively ("mille milliards")
        parts.append("un milliard" if milliards == 1 else f"{integer_to_french_words(milliards)} milliards")
    millions, rest = divmod(n, 1_000_000)
    thousands, units = divmod(rest, 1000)
    if millions:
        parts.append("un million" if millions == 1 else f"{_group_to_words(millions)} millions")
    if thousands:
        parts.append("mille" if thousands == 1 else f"{_group_to_words(thousands, plural=False)} mille")
    if units:
        parts.append(_group_to_words(units))
    return " ".join(parts)


def amount_to_french_words(amount: Number) -> str:
    """
    Spell out an amount in dirhams and centimes.

    Examples:
        >>> amount_to_french_words(1250.5)
        'mille deux cent cinquante dirhams et cinquante centimes'
        >>> amount_to_french_words(71)
        'soixante-et-onze dirhams et zéro centime'
    """
    value = _to_cents(amount)
    if value == 0:
        return "zéro"
    value = abs(value)
    int_part = int(value)
    cents = int((value - int_part) * 100)

    result = f"{integer_to_french_words(int_part)} dirhams"
    if cents:
        result += f" et {integer_to_french_words(cents)} centimes"
    else:
        result += " et zéro centime"
    return result
