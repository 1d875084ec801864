# backend/coloc_ledger/domain/money.py
from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_CURRENCY = "EUR"

# 10,000,000.00 upper bound on any single amount
MAX_AMOUNT_CENTS = 10_000_000_00

_CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£", "CHF": "CHF "}


class MoneyError(ValueError):
    """Raised when money parsing or formatting fails."""


def _require_cents(value: object, what: str = "cents") -> int:
    # bool is an int subclass; a True share is always a bug
    if isinstance(value, bool) or not isinstance(value, int):
        raise MoneyError(f"{what} must be an int number of minor units")
    return value


@dataclass(frozen=True)
class Money:
    """
    Money value object using integer minor units (cents).
    No floats anywhere; the currency tag only drives formatting.
    """
    cents: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        _require_cents(self.cents, "Money.cents")
        if not isinstance(self.currency, str) or not self.currency.strip():
            raise MoneyError("Money.currency must be a non-empty string")

    def format(self, symbol: str | None = None) -> str:
        """
        Format minor units as a string like "€12.34" or "-€0.05".
        """
        if symbol is None:
            symbol = _CURRENCY_SYMBOLS.get(self.currency, f"{self.currency} ")
        sign = "-" if self.cents < 0 else ""
        abs_cents = abs(self.cents)
        units = abs_cents // 100
        cents = abs_cents % 100
        return f"{sign}{symbol}{units}.{cents:02d}"


# Conservative amount parsing for typed input:
# - optional leading "-" and currency symbol, decimal "." or ","
# - rejects thousands separators to avoid guessing ("1,234.56")
_AMOUNT_TOKEN_RE = re.compile(r"^\s*(-)?\s*[€$£]?\s*(\d{1,9})([.,](\d{1,2}))?\s*$")


def parse_amount_to_cents(
    token: str,
    *,
    allow_negative: bool = False,
    max_abs_cents: int = MAX_AMOUNT_CENTS,
) -> int:
    """
    Parse a typed money amount into integer minor units.

    Accepts examples:
      "12" -> 1200
      "12.3" -> 1230
      "€12.34" -> 1234
      "12,34" -> 1234  (decimal comma)

    Rejects:
      "1,234.56" (thousands separator ambiguity)
      "12.345"
      "abc"
      "-5" unless allow_negative
    """
    if not isinstance(token, str):
        raise MoneyError("amount must be a string")

    s = token.strip()
    if s == "":
        raise MoneyError("amount is empty")

    if re.search(r"\d,\d{3}", s):
        raise MoneyError(f"ambiguous thousands separator format: {token}")

    m = _AMOUNT_TOKEN_RE.match(s)
    if not m:
        raise MoneyError(f"invalid amount: {token}")

    negative = bool(m.group(1))
    if negative and not allow_negative:
        raise MoneyError("negative amounts are not allowed")

    whole = int(m.group(2))
    dec_digits = m.group(4)
    cents = 0
    if dec_digits is not None:
        cents = int(dec_digits) * 10 if len(dec_digits) == 1 else int(dec_digits)

    total = whole * 100 + cents
    if negative:
        total = -total

    if abs(total) > max_abs_cents:
        raise MoneyError("amount exceeds safety limit")

    return total


def cents_to_str(cents: int, *, currency: str = DEFAULT_CURRENCY) -> str:
    """
    Convert integer cents to a display string like "€12.34".
    """
    return Money(cents=_require_cents(cents), currency=currency).format()


def safe_sum_cents(*values: int) -> int:
    """
    Sum cents with type checks (no floats).
    """
    total = 0
    for v in values:
        total += _require_cents(v, "all values")
    return total
