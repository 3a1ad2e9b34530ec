"""
Request Parameter Validation

Checks caller input before anything reaches the ledger, so a rejected
request never leaves a partial write behind.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from eth_utils import is_address, to_checksum_address

from .exceptions import InvalidParameterError, MissingParameterError


def is_present(value: Any) -> bool:
    """Absent means ``None``, a blank string, or a falsy value such as ``0``."""
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def require(message: str, **params: Any) -> Dict[str, Any]:
    """
    Ensure every named parameter is present.

    Raises:
        MissingParameterError: with ``message`` if any parameter is absent
    """
    missing = [name for name, value in params.items() if not is_present(value)]
    if missing:
        raise MissingParameterError(message)
    return params


def parse_address(value: str, name: str = "address") -> str:
    """Return the EIP-55 checksummed form of a hex address."""
    if not isinstance(value, str) or not is_address(value.strip()):
        raise InvalidParameterError(f"{name} must be a hexadecimal address, got {value!r}")
    return to_checksum_address(value.strip())


def parse_amount(value: Any, name: str = "amount", decimals: Optional[int] = None) -> Decimal:
    """
    Parse a strictly positive token amount.

    Floats go through ``str`` so ``0.1`` stays ``Decimal('0.1')``.
    ``decimals`` caps the number of fractional digits.
    """
    if isinstance(value, bool):
        raise InvalidParameterError(f"{name} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidParameterError(f"{name} must be a number, got {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidParameterError(f"{name} must be a positive number")
    if decimals is not None and amount.as_tuple().exponent < -decimals:
        raise InvalidParameterError(f"{name} supports at most {decimals} decimals")
    return amount


def parse_text(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise InvalidParameterError(f"{name} must be a string")
    return value.strip()
