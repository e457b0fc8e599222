from decimal import Decimal, InvalidOperation
from typing import Union

from app.modules.ledger.exceptions import InvalidAmount

# ISO 4217 minor units for currencies that do not use two decimal places
_MINOR_UNITS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
}

DEFAULT_MINOR_UNITS = 2

# Largest amount a Numeric(19, 4) column can hold in its integer part
MAX_AMOUNT = Decimal("999999999999999")

AmountLike = Union[Decimal, str, int]


def minor_units(currency: str) -> int:
    """Number of decimal places allowed for ``currency``"""
    return _MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


def quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_units(currency))


def to_money(value: AmountLike, currency: str) -> Decimal:
    """Quantize a stored value to the currency's precision"""
    return Decimal(value).quantize(quantum(currency))


def parse_amount(amount: AmountLike) -> Decimal:
    """
    Turn ``amount`` into a strictly positive, finite Decimal.

    Floats are rejected outright since they cannot carry an exact amount.
    """
    if isinstance(amount, (float, bool)):
        raise InvalidAmount(amount, "amount must be a decimal, not a float")

    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(amount, "not a number")

    if not value.is_finite():
        raise InvalidAmount(amount, "amount must be finite")
    if value <= 0:
        raise InvalidAmount(amount, "amount must be positive")
    if value > MAX_AMOUNT:
        raise InvalidAmount(amount, "amount is too large")
    return value


def validate_amount(amount: AmountLike, currency: str) -> Decimal:
    """Positive amount with no more decimal places than ``currency`` allows"""
    value = parse_amount(amount)
    places = minor_units(currency)
    try:
        quantized = value.quantize(quantum(currency))
    except InvalidOperation:
        raise InvalidAmount(amount, "amount is too large")
    if quantized != value:
        raise InvalidAmount(amount, f"{currency} allows at most {places} decimal places")
    return quantized
