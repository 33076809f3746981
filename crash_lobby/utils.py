# utils.py
"""
Small helpers shared by the ledger, coordinator and HTTP layer.

- Unique ids
- Decimal parsing and money quantization
- Log formatting for multipliers and balances
"""

from __future__ import annotations

import secrets
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union

NumberType = Union[float, Decimal, int, str]

CENT = Decimal("0.01")


def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round ids.
    """
    return secrets.token_hex(length)


def to_decimal(value: NumberType) -> Decimal:
    """
    Convert API input to Decimal.
    Floats go through str() so 2.1 stays 2.1 and not 2.100000000000000088...

    Raises:
        ValueError: input is not a finite number.
    """
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_DOWN)


def format_multiplier(mult: Optional[NumberType]) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    if mult is None:
        return "x-.--"
    return f"x{float(mult):.2f}"


def format_balance(amount: NumberType) -> str:
    return f"{float(amount):.2f}"


def format_timestamp(ts: Optional[float] = None) -> Optional[str]:
    """
    ISO formatted timestamp, None passes through.
    """
    if ts is None:
        return None
    return datetime.fromtimestamp(ts).isoformat(timespec="milliseconds")
