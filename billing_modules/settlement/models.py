"""
Settlement Domain Models (``billing_modules.settlement.models``).

Responsibility
--------------
Frozen value objects returned by ``SettlementService``: the outcome of one
allocation (committed or simulated), payment receipts, and open customer
credit.

Invariants enforced
-------------------
* ``AllocationOutcome``: ``total_applied + excess_amount == amount``.
* ``CustomerCredit.remaining_amount`` never exceeds ``original_amount``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_engines.allocation import AllocationLine


class ReceiptSource(str, Enum):
    """What produced a payment receipt."""

    PAYMENT = "payment"  # bulk payment spread over outstanding invoices
    INVOICE_PAYMENT = "invoice_payment"  # payment against one named invoice
    CREDIT = "credit"  # previously recorded excess applied later


CREDIT_METHOD = "credit"

BULK_PAYMENT_NOTE = "Auto-allocated from bulk payment"
CREDIT_NOTE = "Applied from customer credit"


@dataclass(frozen=True)
class AllocationOutcome:
    """
    Result of one allocation call.

    ``breakdown`` lists every invoice that received part of the payment in
    the order it was funded.  ``excess_amount`` is what was left after the
    last outstanding invoice.  A simulated outcome carries no receipt or
    credit id.
    """

    customer_key: str
    amount: Decimal
    payment_date: date
    method: str
    breakdown: tuple[AllocationLine, ...]
    excess_amount: Decimal
    simulated: bool = False
    source: ReceiptSource = ReceiptSource.PAYMENT
    receipt_id: UUID | None = None
    credit_id: UUID | None = None
    skipped_invoice_ids: tuple[UUID, ...] = ()

    @property
    def total_applied(self) -> Decimal:
        return sum((line.amount_applied for line in self.breakdown), Decimal("0"))


@dataclass(frozen=True)
class PaymentReceipt:
    """A committed payment event."""

    id: UUID
    receipt_seq: int
    customer_key: str
    amount: Decimal
    payment_date: date
    method: str
    source: ReceiptSource
    applied_amount: Decimal
    excess_amount: Decimal
    notes: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CustomerCredit:
    """Excess from a committed payment, consumable by ``apply_credit``."""

    id: UUID
    customer_key: str
    receipt_id: UUID
    receipt_seq: int
    original_amount: Decimal
    remaining_amount: Decimal
    recorded_on: date
