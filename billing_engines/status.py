"""
Module: billing_engines.status
Responsibility:
    Derive an invoice's payment status from how much of it has been paid.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Total: every (amount_paid, total_amount) pair maps to exactly one of
      PENDING, PARTIAL or RECEIVED.  RETURNED is never derived; it only
      exists as a manual override.
    - Balance: ``amount_paid + amount_pending`` equals ``total_amount``;
      ``is_balanced`` checks it within a rounding tolerance.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


class PaymentStatus(str, Enum):
    """Invoice payment states."""

    PENDING = "pending"
    PARTIAL = "partial"
    RECEIVED = "received"
    RETURNED = "returned"

    @property
    def is_outstanding(self) -> bool:
        """True for states that still take part in payment allocation."""
        return self in OUTSTANDING_STATUSES


OUTSTANDING_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PARTIAL}
)


def classify(amount_paid: Decimal, total_amount: Decimal) -> PaymentStatus:
    """
    Classify an invoice by its paid amount.

    ``PENDING`` if nothing has been paid, ``RECEIVED`` once the paid amount
    reaches the total, ``PARTIAL`` otherwise.
    """
    if amount_paid == 0:
        return PaymentStatus.PENDING
    if amount_paid >= total_amount:
        return PaymentStatus.RECEIVED
    return PaymentStatus.PARTIAL


def is_balanced(
    amount_paid: Decimal,
    amount_pending: Decimal,
    total_amount: Decimal,
    tolerance: Decimal = Decimal("0"),
) -> bool:
    """True when paid plus pending accounts for the total within ``tolerance``."""
    return abs(amount_paid + amount_pending - total_amount) <= tolerance
