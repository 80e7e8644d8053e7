"""
Invoicing Domain Models (``billing_modules.invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for invoices (billable sale records), the
payment lines applied to them, and the reporting summaries built from them.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Returned by
``InvoiceStore`` and ``SettlementService``; never ORM entities.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* All monetary fields use ``Decimal`` -- NEVER ``float``.
* ``amount_paid + amount_pending == total_amount`` for every invoice; the
  status may disagree with the amounts only when ``status_overridden``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_engines.status import PaymentStatus, classify, is_balanced


class SaleCategory(str, Enum):
    """Settlement channel a sale was made through."""

    CONTRACT = "contract"  # bandhi: supplied to a vendor under contract
    SPOT_MARKET = "spot_market"  # mandi
    DIRECT_TO_CONSUMER = "direct_to_consumer"  # door to door


def normalize_customer_key(name: str | None) -> str:
    """
    Matching key for a customer name.

    Case-insensitive, surrounding whitespace dropped and inner runs of
    whitespace collapsed, so "  Ram  Lal " and "ram lal" are one customer.
    """
    if not name:
        return ""
    return " ".join(name.split()).casefold()


@dataclass(frozen=True)
class InvoicePayment:
    """One amount applied to an invoice by a payment event."""

    id: UUID
    invoice_id: UUID
    receipt_id: UUID | None
    amount: Decimal
    payment_date: date
    method: str
    notes: str | None = None


@dataclass(frozen=True)
class Invoice:
    """A billable sale record."""

    id: UUID
    account_id: UUID
    customer_key: str
    customer_name: str
    invoice_date: date
    creation_seq: int
    category: SaleCategory
    quantity: Decimal
    unit_rate: Decimal
    unit_surcharge: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    amount_pending: Decimal
    status: PaymentStatus
    status_overridden: bool = False
    contract_id: UUID | None = None
    notes: str | None = None
    created_at: datetime | None = None
    payments: tuple[InvoicePayment, ...] = field(default_factory=tuple)

    @property
    def derived_status(self) -> PaymentStatus:
        """What the paid/total amounts say the status should be."""
        return classify(self.amount_paid, self.total_amount)

    @property
    def is_outstanding(self) -> bool:
        return self.status.is_outstanding

    def is_balanced(self, tolerance: Decimal = Decimal("0")) -> bool:
        """Paid plus pending equals the total, give or take ``tolerance``."""
        return is_balanced(self.amount_paid, self.amount_pending, self.total_amount, tolerance)


@dataclass(frozen=True)
class CategorySummary:
    """Totals for one sale category."""

    quantity: Decimal = Decimal("0")
    revenue: Decimal = Decimal("0")
    count: int = 0


@dataclass(frozen=True)
class SalesSummary:
    """Reporting snapshot over a filtered set of invoices."""

    total_quantity: Decimal
    total_revenue: Decimal
    by_category: dict[SaleCategory, CategorySummary]
    pending_total: Decimal
    received_total: Decimal
    invoice_count: int
