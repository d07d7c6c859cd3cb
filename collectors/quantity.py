# collectors/quantity.py
"""
Kubernetes resource quantity conversion.

Both CPU ("250m", "2", "1.5") and memory ("128Mi", "1G", "512e6")
quantities go through parse_quantity so the two never decode suffixes
differently.
"""

from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Union

from kubernetes.utils import parse_quantity as _k8s_parse_quantity

Quantity = Union[str, int, float, Decimal, None]


def parse_quantity(quantity: Quantity) -> Decimal:
    """
    Parse a quantity into a Decimal in base units (cores, bytes).
    None and the empty string mean "not set" and parse as 0.
    """
    if quantity is None:
        return Decimal(0)
    if isinstance(quantity, Decimal):
        return quantity
    if isinstance(quantity, str):
        quantity = quantity.strip()
        if not quantity:
            return Decimal(0)

    try:
        return _k8s_parse_quantity(quantity)
    except (ValueError, InvalidOperation) as e:
        raise ValueError(f"Invalid quantity {quantity!r}: {e}") from e


def _round_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def to_millicores(quantity: Quantity) -> int:
    """CPU quantity in milli-units (1000 = one core), rounded up"""
    return _round_up(parse_quantity(quantity) * 1000)


def to_bytes(quantity: Quantity) -> int:
    """Memory quantity in bytes, rounded up"""
    return _round_up(parse_quantity(quantity))
