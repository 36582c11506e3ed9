"""
Ledger Validation Module

Pure checks run before any balance is touched: IBAN shape, transfer amount,
and self-transfer. Amounts are compared as Decimal, never as float.
"""

from contextlib import contextmanager
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from typing import Any, Iterator, Optional
import re

IBAN_PATTERN = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{1,30}$")
GERMAN_IBAN_LENGTH = 22

MONEY_QUANTUM = Decimal("0.01")
MONEY_PRECISION = 60

_WHITESPACE = re.compile(r"\s+")


def clean_iban(iban: Optional[str]) -> str:
    """Strip all whitespace and uppercase; None becomes an empty string"""
    if not iban:
        return ""
    return _WHITESPACE.sub("", iban).upper()


def validate_iban(iban: Optional[str]) -> bool:
    """
    Check IBAN shape.

    Two letters of country code, two check digits, then 1-30 alphanumerics.
    German IBANs must be exactly 22 characters. Check digits are not
    verified.
    """
    cleaned = clean_iban(iban)
    if not cleaned:
        return False

    if not IBAN_PATTERN.match(cleaned):
        return False

    if cleaned.startswith("DE"):
        return len(cleaned) == GERMAN_IBAN_LENGTH
    return True


def to_decimal(amount: Any) -> Optional[Decimal]:
    """
    Convert an amount to Decimal.

    Floats go through str() so 0.1 stays 0.1. Returns None for anything
    that is not a finite number.
    """
    if amount is None or isinstance(amount, bool):
        return None
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError):
            return None
    if not value.is_finite():
        return None
    return value


@contextmanager
def money_context() -> Iterator[None]:
    """
    Decimal context for balance arithmetic.

    Wide enough for any cent amount a balance can hold, and any rounding
    raises Inexact instead of silently dropping digits.
    """
    with localcontext() as ctx:
        ctx.prec = MONEY_PRECISION
        ctx.traps[Inexact] = True
        yield


def to_money(amount: Any) -> Optional[Decimal]:
    """
    Convert an amount to Decimal with exactly two decimal places.

    Returns None when the amount is not a finite number or carries
    sub-cent digits (1.005, 6E-26).
    """
    value = to_decimal(amount)
    if value is None:
        return None
    try:
        with money_context():
            return value.quantize(MONEY_QUANTUM)
    except (Inexact, InvalidOperation):
        return None


def validate_amount(amount: Any) -> bool:
    """Amount must be whole cents and strictly greater than zero"""
    value = to_money(amount)
    return value is not None and value > Decimal('0')


def validate_distinct_accounts(from_iban: Optional[str], to_iban: Optional[str]) -> bool:
    """Fails when both sides name the same IBAN"""
    return clean_iban(from_iban) != clean_iban(to_iban)
