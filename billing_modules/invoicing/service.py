"""
InvoiceStore -- owns invoice records for one farm account.

Thin service over the ``invoices`` table that:
1. Creates invoices from sale data (total fixed at creation)
2. Applies manual status overrides, leaving the amounts alone
3. Reads a customer's outstanding invoices in allocation order
4. Serves filtered listings and summaries to reporting screens

Payment application does NOT live here; ``SettlementService`` reads the
outstanding rows through ``lock_outstanding`` and mutates them inside its own
transaction.

Usage:
    store = InvoiceStore(session, account_id=farm_id, clock=clock)
    invoice = store.create(
        customer_name="Ram Lal",
        invoice_date=date(2024, 1, 1),
        quantity=Decimal("20"),
        unit_rate=Decimal("50"),
        actor_id=user_id,
    )
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import BillingConfig
from billing_engines.status import OUTSTANDING_STATUSES, PaymentStatus
from billing_kernel.concurrency import KeyedLockRegistry
from billing_kernel.db.types import ZERO, round_money, to_decimal
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    ContractNotFoundError,
    InvoiceNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_modules.contracts.orm import ContractModel
from billing_modules.invoicing.models import (
    CategorySummary,
    Invoice,
    SaleCategory,
    SalesSummary,
    normalize_customer_key,
)
from billing_modules.invoicing.orm import InvoiceModel

logger = get_logger("modules.invoicing.service")

CUSTOMER_LOCK = "customer"

_OUTSTANDING_VALUES = tuple(s.value for s in OUTSTANDING_STATUSES)


def coerce_status(value: PaymentStatus | str) -> PaymentStatus:
    """Parse a status name, raising ``ValidationError`` for unknown ones."""
    try:
        return PaymentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in PaymentStatus)
        raise ValidationError("status", f"{value!r} is not one of {allowed}") from None


def coerce_category(value: SaleCategory | str) -> SaleCategory:
    try:
        return SaleCategory(value)
    except ValueError:
        allowed = ", ".join(c.value for c in SaleCategory)
        raise ValidationError("category", f"{value!r} is not one of {allowed}") from None


class InvoiceStore(BaseService):
    """
    Account-scoped invoice repository.

    Transaction boundary: ``create`` and ``set_status_manually`` commit on
    success and roll back on failure.  Reads never commit.
    """

    def __init__(
        self,
        session: Session,
        account_id: UUID,
        clock: Clock | None = None,
        config: BillingConfig | None = None,
        locks: KeyedLockRegistry | None = None,
    ):
        self._config = config or BillingConfig()
        super().__init__(
            session,
            account_id,
            clock=clock,
            locks=locks,
            lock_timeout=self._config.lock_timeout_seconds,
        )
        self._sequences = SequenceService(session)

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        *,
        invoice_date: date,
        quantity,
        unit_rate,
        actor_id: UUID,
        customer_name: str | None = None,
        category: SaleCategory | str = SaleCategory.DIRECT_TO_CONSUMER,
        unit_surcharge=ZERO,
        contract_id: UUID | None = None,
        initial_status: PaymentStatus | str | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """
        Record a new invoice.

        ``total_amount = quantity * unit_rate + quantity * unit_surcharge``,
        rounded to the settlement currency's minor unit.  The invoice starts
        fully pending.  A non-pending ``initial_status`` is stored as a
        manual override.  A contract-linked invoice is always keyed to the
        contract's vendor; the entered name is kept for display and defaults
        to the vendor name.

        Raises:
            ValidationError: non-positive quantity or rate, negative
                surcharge, missing customer, unknown category or status,
                a total beyond the decimal range.
            ContractNotFoundError: ``contract_id`` outside this account.
        """
        quantity = to_decimal(quantity, "quantity")
        unit_rate = to_decimal(unit_rate, "unit_rate")
        unit_surcharge = to_decimal(unit_surcharge, "unit_surcharge")
        category = coerce_category(category)
        status = coerce_status(initial_status) if initial_status is not None else PaymentStatus.PENDING

        if quantity <= ZERO:
            raise ValidationError("quantity", f"must be positive, got {quantity}")
        if unit_rate <= ZERO:
            raise ValidationError("unit_rate", f"must be positive, got {unit_rate}")
        if unit_surcharge < ZERO:
            raise ValidationError("unit_surcharge", f"cannot be negative, got {unit_surcharge}")

        if contract_id is not None:
            # Contract sales always settle against the vendor
            contract = self._scoped_contract(contract_id)
            if not customer_name or not customer_name.strip():
                customer_name = contract.vendor_name
            customer_key = contract.vendor_key
        else:
            customer_key = normalize_customer_key(customer_name)
        if not customer_key:
            raise ValidationError("customer_name", "is required")

        try:
            total = round_money(
                quantity * unit_rate + quantity * unit_surcharge,
                self._config.money_decimal_places,
            )
        except InvalidOperation:
            raise ValidationError("total_amount", "out of range") from None

        with self._transaction("invoice", customer_key):
            row = InvoiceModel(
                account_id=self.account_id,
                customer_key=customer_key,
                customer_name=" ".join(customer_name.split()),
                invoice_date=invoice_date,
                creation_seq=self._sequences.next_value(SequenceService.INVOICE),
                category=category.value,
                contract_id=contract_id,
                quantity=quantity,
                unit_rate=unit_rate,
                unit_surcharge=unit_surcharge,
                total_amount=total,
                amount_paid=ZERO,
                amount_pending=total,
                status=status.value,
                status_overridden=status is not PaymentStatus.PENDING,
                notes=notes,
                created_by_id=actor_id,
            )
            self.session.add(row)
            self.session.flush()
            invoice = row.to_dto()

        with self._log_scope(customer_key=customer_key, actor_id=actor_id):
            logger.info("invoice_created", extra={
                "invoice_id": str(invoice.id),
                "category": category.value,
                "total_amount": str(total),
                "status": status.value,
            })
        return invoice

    def set_status_manually(
        self,
        invoice_id: UUID,
        new_status: PaymentStatus | str,
        *,
        actor_id: UUID,
    ) -> Invoice:
        """
        Force an invoice's status without touching its amounts.

        The paid/pending amounts are left exactly as they are, so the
        invoice may afterwards disagree with what its amounts imply.  The
        invoice is flagged ``status_overridden`` and keeps the forced status
        until a later payment allocation rewrites it.

        Runs under the customer's lock so it cannot interleave with an
        allocation for the same customer.
        """
        status = coerce_status(new_status)
        customer_key = self._scoped_invoice(invoice_id).customer_key

        with self._log_scope(customer_key=customer_key, actor_id=actor_id):
            with self._locks.hold(self._lock_key(CUSTOMER_LOCK, customer_key), self._lock_timeout):
                with self._transaction("invoice", str(invoice_id)):
                    row = self.lock_invoice(invoice_id)
                    previous = row.status
                    row.status = status.value
                    row.status_overridden = True
                    row.updated_by_id = actor_id
                    self.session.flush()
                    invoice = row.to_dto()

            logger.info("invoice_status_overridden", extra={
                "invoice_id": str(invoice_id),
                "from_status": previous,
                "to_status": status.value,
                "amount_paid": str(invoice.amount_paid),
                "amount_pending": str(invoice.amount_pending),
            })
        return invoice

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, invoice_id: UUID) -> Invoice:
        """Fetch one invoice; ``InvoiceNotFoundError`` when absent."""
        return self._scoped_invoice(invoice_id).to_dto()

    def list_outstanding(self, customer_key: str) -> list[Invoice]:
        """
        Pending and partial invoices for a customer, oldest first.

        Ordered by transaction date, ties broken by creation order.  The
        customer key is normalized, so any spelling of the name matches.
        """
        key = normalize_customer_key(customer_key)
        if not key:
            raise ValidationError("customer_key", "is required")
        return [row.to_dto() for row in self._outstanding_query(key)]

    def lock_outstanding(self, customer_key: str) -> list[InvoiceModel]:
        """
        Outstanding ORM rows for a customer with row locks taken.

        For use inside a caller-owned transaction.  Rows are refreshed from
        the database so that a stale identity-map copy is never allocated
        against.
        """
        return self._outstanding_query(customer_key, for_update=True)

    def lock_invoice(self, invoice_id: UUID) -> InvoiceModel:
        """One invoice row, locked and refreshed, inside a caller's transaction."""
        row = self.session.execute(
            select(InvoiceModel)
            .where(
                InvoiceModel.id == invoice_id,
                InvoiceModel.account_id == self.account_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return row

    def list_invoices(
        self,
        *,
        category: SaleCategory | str | None = None,
        status: PaymentStatus | str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        customer_key: str | None = None,
    ) -> list[Invoice]:
        """Filtered listing, newest first."""
        stmt = self._filtered(category, status, start_date, end_date, customer_key)
        stmt = stmt.order_by(InvoiceModel.invoice_date.desc(), InvoiceModel.creation_seq.desc())
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def summarize(
        self,
        *,
        category: SaleCategory | str | None = None,
        status: PaymentStatus | str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        customer_key: str | None = None,
    ) -> SalesSummary:
        """Quantity, revenue and settlement totals over a filtered set."""
        rows = self.session.execute(
            self._filtered(category, status, start_date, end_date, customer_key)
        ).scalars().all()

        by_category: dict[SaleCategory, CategorySummary] = {c: CategorySummary() for c in SaleCategory}
        total_quantity = total_revenue = pending = received = ZERO
        for row in rows:
            cat = SaleCategory(row.category)
            current = by_category[cat]
            by_category[cat] = CategorySummary(
                quantity=current.quantity + row.quantity,
                revenue=current.revenue + row.total_amount,
                count=current.count + 1,
            )
            total_quantity += row.quantity
            total_revenue += row.total_amount
            pending += row.amount_pending
            received += row.amount_paid

        return SalesSummary(
            total_quantity=total_quantity,
            total_revenue=total_revenue,
            by_category=by_category,
            pending_total=pending,
            received_total=received,
            invoice_count=len(rows),
        )

    def outstanding_balance(self, customer_key: str) -> Decimal:
        """Sum of pending amounts over a customer's outstanding invoices."""
        return sum(
            (invoice.amount_pending for invoice in self.list_outstanding(customer_key)),
            ZERO,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _outstanding_query(self, customer_key: str, for_update: bool = False) -> list[InvoiceModel]:
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.account_id == self.account_id,
                InvoiceModel.customer_key == customer_key,
                InvoiceModel.status.in_(_OUTSTANDING_VALUES),
            )
            .order_by(InvoiceModel.invoice_date, InvoiceModel.creation_seq)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars())

    def _filtered(self, category, status, start_date, end_date, customer_key):
        stmt = select(InvoiceModel).where(InvoiceModel.account_id == self.account_id)
        if category is not None:
            stmt = stmt.where(InvoiceModel.category == coerce_category(category).value)
        if status is not None:
            stmt = stmt.where(InvoiceModel.status == coerce_status(status).value)
        if start_date is not None:
            stmt = stmt.where(InvoiceModel.invoice_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(InvoiceModel.invoice_date <= end_date)
        if customer_key:
            stmt = stmt.where(InvoiceModel.customer_key == normalize_customer_key(customer_key))
        return stmt

    def _scoped_invoice(self, invoice_id: UUID) -> InvoiceModel:
        row = self.session.execute(
            select(InvoiceModel).where(
                InvoiceModel.id == invoice_id,
                InvoiceModel.account_id == self.account_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return row

    def _scoped_contract(self, contract_id: UUID) -> ContractModel:
        row = self.session.execute(
            select(ContractModel).where(
                ContractModel.id == contract_id,
                ContractModel.account_id == self.account_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise ContractNotFoundError(str(contract_id))
        return row
