"""
Checked fixed-point arithmetic.

All amounts and weights are non-negative ints bounded by MAX_AMOUNT (one
256-bit word). Unlike a VM word, nothing here wraps: any result outside
[0, MAX_AMOUNT] raises InvalidAmountError before the caller mutates state.
Caller-supplied clocks and boolean flags are checked here as well.
"""

from .constants import BPS_DENOMINATOR, MAX_AMOUNT
from .exceptions import InvalidAmountError


def require_amount(value, name: str = "amount", *, positive: bool = False) -> int:
    """Validate *value* as an in-range int and return it."""
    # bool is an int subclass; True is not a monetary quantity
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidAmountError(f"{name} cannot be negative ({value})")
    if positive and value == 0:
        raise InvalidAmountError(f"{name} must be positive")
    if value > MAX_AMOUNT:
        raise InvalidAmountError(f"{name} overflows the fixed-point range")
    return value


def require_bps(value, name: str = "bps") -> int:
    """Validate a basis-point quantity in [0, BPS_DENOMINATOR]."""
    require_amount(value, name)
    if value > BPS_DENOMINATOR:
        raise InvalidAmountError(f"{name} {value} exceeds {BPS_DENOMINATOR}")
    return value


def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > MAX_AMOUNT:
        raise InvalidAmountError(f"Overflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise InvalidAmountError(f"Underflow: {a} - {b}")
    return a - b


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > MAX_AMOUNT:
        raise InvalidAmountError(f"Overflow: {a} * {b}")
    return result


def mul_div(a: int, b: int, denominator: int) -> int:
    """
    floor(a * b / denominator).

    The intermediate product is exact (Python ints are unbounded); only the
    final result must fit the range.
    """
    if denominator <= 0:
        raise InvalidAmountError("Division by zero")
    result = (a * b) // denominator
    if result > MAX_AMOUNT:
        raise InvalidAmountError(f"Overflow: {a} * {b} / {denominator}")
    return result


def bps_of(amount: int, bps: int) -> int:
    """Floor of *amount* scaled by *bps* / 10000."""
    return mul_div(amount, bps, BPS_DENOMINATOR)


def require_time(value, name: str = "now") -> float:
    """Validate *value* as a finite, non-negative seconds timestamp."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidAmountError(f"{name} must be a number of seconds, got {type(value).__name__}")
    if value != value or value in (float("inf"), float("-inf")):
        raise InvalidAmountError(f"{name} must be finite")
    if value < 0:
        raise InvalidAmountError(f"{name} cannot be negative ({value})")
    return value


def require_flag(value, name: str) -> bool:
    """Validate *value* as a real bool; "false" or 0 are not accepted."""
    if not isinstance(value, bool):
        raise InvalidAmountError(f"{name} must be true or false, got {type(value).__name__}")
    return value
