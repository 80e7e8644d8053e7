"""
Invoicing ORM Models (``billing_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence for invoices and the payment lines applied to them.
Maps to the frozen dataclasses in ``models.py``.

Invoices carry a ``version`` column wired to SQLAlchemy's optimistic
``version_id_col``: an UPDATE issued against a row that another transaction
changed since it was read matches zero rows and raises ``StaleDataError``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import ScopedBase
from billing_engines.status import PaymentStatus


class InvoiceModel(ScopedBase):
    """
    ORM model for invoices.

    Guarantees:
        - ``customer_key`` is the normalized matching key; ``customer_name``
          keeps the name as entered.
        - ``creation_seq`` is strictly increasing in creation order.
        - ``total_amount`` is fixed at creation.
        - status stored as string enum value.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        Index(
            "idx_invoices_outstanding",
            "account_id", "customer_key", "status", "invoice_date", "creation_seq",
        ),
        Index("idx_invoices_contract_id", "contract_id"),
        Index("idx_invoices_invoice_date", "invoice_date"),
    )

    customer_key: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    creation_seq: Mapped[int] = mapped_column(nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    contract_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("contracts.id"), nullable=True
    )

    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_rate: Mapped[Decimal] = mapped_column(nullable=False)
    unit_surcharge: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    amount_pending: Mapped[Decimal] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    status_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    version: Mapped[int] = mapped_column(nullable=False)

    payments: Mapped[list["InvoicePaymentModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoicePaymentModel.payment_seq",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        """Convert ORM model to frozen dataclass."""
        from billing_modules.invoicing.models import Invoice, SaleCategory

        return Invoice(
            id=self.id,
            account_id=self.account_id,
            customer_key=self.customer_key,
            customer_name=self.customer_name,
            invoice_date=self.invoice_date,
            creation_seq=self.creation_seq,
            category=SaleCategory(self.category),
            quantity=self.quantity,
            unit_rate=self.unit_rate,
            unit_surcharge=self.unit_surcharge,
            total_amount=self.total_amount,
            amount_paid=self.amount_paid,
            amount_pending=self.amount_pending,
            status=PaymentStatus(self.status),
            status_overridden=self.status_overridden,
            contract_id=self.contract_id,
            notes=self.notes,
            created_at=self.created_at,
            payments=tuple(p.to_dto() for p in self.payments),
        )

    def to_balance(self):
        """Snapshot for the allocation planner."""
        from billing_engines.allocation import OutstandingBalance

        return OutstandingBalance(
            invoice_id=self.id,
            invoice_date=self.invoice_date,
            creation_seq=self.creation_seq,
            total_amount=self.total_amount,
            amount_paid=self.amount_paid,
            amount_pending=self.amount_pending,
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel {self.customer_key} {self.invoice_date} "
            f"{self.amount_paid}/{self.total_amount} {self.status}>"
        )


class InvoicePaymentModel(ScopedBase):
    """
    One amount applied to an invoice.

    ``receipt_id`` links back to the payment event that produced it.
    ``payment_seq`` preserves application order on the invoice.
    """

    __tablename__ = "invoice_payments"

    __table_args__ = (
        Index("idx_invoice_payments_invoice_id", "invoice_id"),
        Index("idx_invoice_payments_receipt_id", "receipt_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id"), nullable=False
    )
    receipt_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_receipts.id"), nullable=True
    )
    payment_seq: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    invoice: Mapped[InvoiceModel] = relationship(back_populates="payments")

    def to_dto(self):
        from billing_modules.invoicing.models import InvoicePayment

        return InvoicePayment(
            id=self.id,
            invoice_id=self.invoice_id,
            receipt_id=self.receipt_id,
            amount=self.amount,
            payment_date=self.payment_date,
            method=self.method,
            notes=self.notes,
        )
