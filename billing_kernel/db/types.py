"""
Module: billing_kernel.db.types
Responsibility: Money rounding and currency validation shared by every
    engine, model and service.  Centralizes precision and rounding so that
    every fee, tax and invoice amount is rounded identically.
Architecture position: Kernel > DB.  May be imported by engines, modules
    and services.  MUST NOT import from any of those layers.

Invariants enforced:
    - round_money() is the ONLY sanctioned rounding function for monetary
      values: two decimal places, ROUND_HALF_UP.
    - validate_currency() rejects any string that is not a recognized
      3-character ISO 4217 currency code.
    - No floats.  All monetary amounts are Decimal.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any

from sqlalchemy import Numeric, String

from billing_kernel.exceptions import InvalidArgumentError, InvalidCurrencyError

# Monetary amount column: 38 digits total, 9 decimal places
MoneyColumn = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code column
CurrencyColumn = Annotated[str, String(3)]

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

_TWO_PLACES = Decimal("0.01")


def round_money(value: Decimal, rounding: str = DEFAULT_ROUNDING) -> Decimal:
    """
    Round a monetary value to two decimal places.

    This is the ONLY sanctioned rounding function for monetary values.
    """
    return value.quantize(_TWO_PLACES, rounding=rounding)


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Coerce a caller-supplied number to Decimal without going through float.

    Raises:
        InvalidArgumentError: If the value is missing or not numeric.
    """
    if value is None:
        raise InvalidArgumentError(field, "is required")
    if isinstance(value, bool):
        raise InvalidArgumentError(field, "must be a number, not a boolean")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise InvalidArgumentError(field, f"not a number: {value!r}") from e
    if not result.is_finite():
        raise InvalidArgumentError(field, f"must be finite: {value!r}")
    return result


# ISO 4217 Currency Codes
ISO_4217_CURRENCIES: set[str] = {
    # Major currencies
    "USD", "EUR", "GBP", "JPY", "CHF", "CAD", "AUD", "NZD",
    # Other currencies (alphabetical)
    "AED", "AFN", "ALL", "AMD", "ANG", "AOA", "ARS", "AWG", "AZN",
    "BAM", "BBD", "BDT", "BGN", "BHD", "BIF", "BMD", "BND", "BOB", "BOV", "BRL", "BSD", "BTN", "BWP", "BYN", "BZD",
    "CDF", "CHE", "CHW", "CLF", "CLP", "CNY", "COP", "COU", "CRC", "CUC", "CUP", "CVE", "CZK",
    "DJF", "DKK", "DOP", "DZD",
    "EGP", "ERN", "ETB",
    "FJD", "FKP",
    "GEL", "GHS", "GIP", "GMD", "GNF", "GTQ", "GYD",
    "HKD", "HNL", "HRK", "HTG", "HUF",
    "IDR", "ILS", "INR", "IQD", "IRR", "ISK",
    "JMD", "JOD",
    "KES", "KGS", "KHR", "KMF", "KPW", "KRW", "KWD", "KYD", "KZT",
    "LAK", "LBP", "LKR", "LRD", "LSL", "LYD",
    "MAD", "MDL", "MGA", "MKD", "MMK", "MNT", "MOP", "MRU", "MUR", "MVR", "MWK", "MXN", "MXV", "MYR", "MZN",
    "NAD", "NGN", "NIO", "NOK", "NPR",
    "OMR",
    "PAB", "PEN", "PGK", "PHP", "PKR", "PLN", "PYG",
    "QAR",
    "RON", "RSD", "RUB", "RWF",
    "SAR", "SBD", "SCR", "SDG", "SEK", "SGD", "SHP", "SLE", "SLL", "SOS", "SRD", "SSP", "STN", "SVC", "SYP", "SZL",
    "THB", "TJS", "TMT", "TND", "TOP", "TRY", "TTD", "TWD", "TZS",
    "UAH", "UGX", "USN", "UYI", "UYU", "UYW", "UZS",
    "VED", "VES", "VND", "VUV",
    "WST",
    "XAF", "XAG", "XAU", "XBA", "XBB", "XBC", "XBD", "XCD", "XDR", "XOF", "XPD", "XPF", "XPT", "XSU", "XTS", "XUA", "XXX",
    "YER",
    "ZAR", "ZMW", "ZWL",
}


def validate_currency(currency: str) -> str:
    """
    Validate that a currency code is a valid ISO 4217 code.

    Returns:
        The validated currency code (uppercase, trimmed).

    Raises:
        InvalidCurrencyError: If the currency code is not valid.
    """
    if not currency or not isinstance(currency, str):
        raise InvalidCurrencyError(str(currency))

    normalized = currency.upper().strip()
    if len(normalized) != 3 or normalized not in ISO_4217_CURRENCIES:
        raise InvalidCurrencyError(currency)

    return normalized


def is_valid_currency(currency: str) -> bool:
    """Check if a currency code is a valid ISO 4217 code."""
    try:
        validate_currency(currency)
        return True
    except InvalidCurrencyError:
        return False
