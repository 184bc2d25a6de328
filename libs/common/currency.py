"""Currency helpers for the marketplace.

Internal storage unit: kobo (smallest NGN unit, 100 kobo = ₦1). All prices,
totals and gateway amounts are integers in kobo.
"""

from __future__ import annotations

from typing import Iterable


def line_total_kobo(unit_price_kobo: int, quantity: int) -> int:
    """Price × quantity in kobo, rejecting non-integer inputs."""
    if not isinstance(unit_price_kobo, int) or not isinstance(quantity, int):
        raise TypeError("Kobo amounts and quantities must be integers")
    return unit_price_kobo * quantity


def sum_kobo(amounts: Iterable[int]) -> int:
    total = 0
    for amount in amounts:
        if not isinstance(amount, int):
            raise TypeError("Kobo amounts must be integers")
        total += amount
    return total
