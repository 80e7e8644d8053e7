"""
Settlement ORM Models (``billing_modules.settlement.orm``).

Responsibility
--------------
Persistence for payment receipts and the customer credit created from
payment excess.

Invariants enforced
-------------------
* Receipts are append-only; nothing in the billing core updates them.
* ``CustomerCreditModel.remaining_amount`` only decreases, and carries a
  ``version`` column so two transactions can never consume the same
  credit.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import ScopedBase


class PaymentReceiptModel(ScopedBase):
    """One committed payment event."""

    __tablename__ = "payment_receipts"

    __table_args__ = (
        Index("idx_payment_receipts_customer", "account_id", "customer_key"),
    )

    receipt_seq: Mapped[int] = mapped_column(nullable=False, unique=True)
    customer_key: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    applied_amount: Mapped[Decimal] = mapped_column(nullable=False)
    excess_amount: Mapped[Decimal] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def to_dto(self):
        from billing_modules.settlement.models import PaymentReceipt, ReceiptSource

        return PaymentReceipt(
            id=self.id,
            receipt_seq=self.receipt_seq,
            customer_key=self.customer_key,
            amount=self.amount,
            payment_date=self.payment_date,
            method=self.method,
            source=ReceiptSource(self.source),
            applied_amount=self.applied_amount,
            excess_amount=self.excess_amount,
            notes=self.notes,
            created_at=self.created_at,
        )


class CustomerCreditModel(ScopedBase):
    """Open (or consumed) credit from a payment's excess."""

    __tablename__ = "customer_credits"

    __table_args__ = (
        Index("idx_customer_credits_customer", "account_id", "customer_key", "receipt_seq"),
    )

    customer_key: Mapped[str] = mapped_column(String(255), nullable=False)
    receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_receipts.id"), nullable=False
    )
    receipt_seq: Mapped[int] = mapped_column(nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(nullable=False)
    recorded_on: Mapped[date] = mapped_column(Date, nullable=False)

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from billing_modules.settlement.models import CustomerCredit

        return CustomerCredit(
            id=self.id,
            customer_key=self.customer_key,
            receipt_id=self.receipt_id,
            receipt_seq=self.receipt_seq,
            original_amount=self.original_amount,
            remaining_amount=self.remaining_amount,
            recorded_on=self.recorded_on,
        )
