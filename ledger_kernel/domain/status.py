"""
Status Classifier -- three-state balance status.

Responsibility:
    Derive AVAILABLE / LOW / DEPLETED from a capacity (contracted quantity
    for a line, initial quantity for a modality allocation) and the consumed
    quantity.  The same function serves both granularities.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - DEPLETED iff available <= 0.
    - LOW iff 0 < available <= low_ratio * capacity.
    - AVAILABLE otherwise.
"""

from decimal import Decimal
from enum import Enum

DEFAULT_LOW_RATIO = Decimal("0.10")


class BalanceStatus(str, Enum):
    """Balance status shown in listings and filterable by callers."""

    AVAILABLE = "AVAILABLE"
    LOW = "LOW"
    DEPLETED = "DEPLETED"


def classify(
    capacity: Decimal,
    consumed: Decimal,
    low_ratio: Decimal = DEFAULT_LOW_RATIO,
) -> BalanceStatus:
    """Classify a balance.

    Args:
        capacity: Contracted quantity (line) or initial quantity (allocation).
        consumed: Consumed quantity for the same target.
        low_ratio: Fraction of capacity at or below which a positive balance
            counts as LOW.

    Returns:
        The BalanceStatus for ``capacity - consumed``.
    """
    available = capacity - consumed
    if available <= 0:
        return BalanceStatus.DEPLETED
    if available <= capacity * low_ratio:
        return BalanceStatus.LOW
    return BalanceStatus.AVAILABLE
