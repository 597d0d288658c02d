"""Cart aggregation.

All currency values are integers in the smallest currency unit, so reducing a
cart to its subtotal is exact and needs no rounding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from . import log
from .exceptions import EmptyCartError


def _require_int(name: str, value: object) -> int:
    # bool is an int subclass; a True quantity is always a caller bug.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class LineItem:
    """One product line in a cart snapshot."""

    product_id: str
    unit_price: int
    quantity: int

    def __post_init__(self) -> None:
        _require_int("unit_price", self.unit_price)
        _require_int("quantity", self.quantity)
        if self.unit_price < 0:
            raise ValueError("unit_price must be zero or positive")
        if self.quantity <= 0:
            raise ValueError("quantity must be greater than zero")

    @property
    def line_subtotal(self) -> int:
        return self.unit_price * self.quantity


def aggregate_subtotal(line_items: Sequence[LineItem]) -> int:
    """Reduce a non-empty list of line items to an integer subtotal.

    Args:
        line_items (Sequence[LineItem]): Ordered cart snapshot.

    Returns:
        int: Sum of every line subtotal in minor currency units.

    Raises:
        EmptyCartError: If ``line_items`` is empty.
    """
    if not line_items:
        log.warning("Checkout attempted with an empty cart")
        raise EmptyCartError("Cart is empty")
    subtotal = sum(item.line_subtotal for item in line_items)
    log.debug("Aggregated %d line items into subtotal %d", len(line_items), subtotal)
    return subtotal
