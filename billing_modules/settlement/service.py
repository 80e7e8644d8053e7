"""
SettlementService -- applies incoming payments to outstanding invoices.

Orchestrates:
1. InvoiceStore for the customer's outstanding rows (oldest first, locked)
2. FifoAllocationEngine for the plan (pure; same call for dry run and commit)
3. Receipt, payment-line and credit persistence for committed plans

This service owns the transaction boundary.  A committed allocation writes
every invoice mutation, payment line, the receipt and any credit in ONE
transaction; any failure rolls all of it back.  A simulated allocation runs
the identical read and plan, then rolls back without writing.

Serialization per customer:
    keyed in-process lock  ->  SELECT ... FOR UPDATE  ->  version columns

Allocation is NOT idempotent.  Calling ``allocate`` twice with the same
arguments applies the payment twice; callers guarantee at-most-once.

Usage:
    settlement = SettlementService(session, account_id=farm_id, clock=clock)
    outcome = settlement.allocate(
        "Ram Lal", Decimal("1200"), date(2024, 1, 5), "cash", actor_id=user_id,
    )
    for line in outcome.breakdown:
        print(line.invoice_id, line.amount_applied, line.new_status)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import BillingConfig
from billing_engines.allocation import AllocationLine, AllocationPlan, FifoAllocationEngine
from billing_engines.status import OUTSTANDING_STATUSES, is_balanced
from billing_kernel.concurrency import KeyedLockRegistry
from billing_kernel.db.types import ZERO, check_money_precision, to_decimal
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import UnbalancedInvoiceError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService
from billing_modules.invoicing.models import normalize_customer_key
from billing_modules.invoicing.orm import InvoiceModel, InvoicePaymentModel
from billing_modules.invoicing.service import CUSTOMER_LOCK, InvoiceStore
from billing_modules.settlement.models import (
    BULK_PAYMENT_NOTE,
    CREDIT_METHOD,
    CREDIT_NOTE,
    AllocationOutcome,
    CustomerCredit,
    PaymentReceipt,
    ReceiptSource,
)
from billing_modules.settlement.orm import CustomerCreditModel, PaymentReceiptModel

logger = get_logger("modules.settlement.service")

_OUTSTANDING_VALUES = frozenset(s.value for s in OUTSTANDING_STATUSES)


class SettlementService(BaseService):
    """
    Payment allocation, dry runs and the customer credit ledger.

    Engine composition:
    - FifoAllocationEngine: oldest-first plan over an outstanding snapshot

    Transaction boundary: this service commits on success, rolls back on
    failure, and always rolls back a simulation.
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
        self._invoices = InvoiceStore(
            session, account_id, clock=self._clock, config=self._config, locks=self._locks,
        )
        self._sequences = SequenceService(session)
        self._engine = FifoAllocationEngine()

    # =========================================================================
    # Payments
    # =========================================================================

    def allocate(
        self,
        customer_key: str,
        amount,
        payment_date: date | None = None,
        method: str | None = None,
        *,
        actor_id: UUID,
        simulate: bool = False,
        notes: str | None = None,
    ) -> AllocationOutcome:
        """
        Apply a payment across the customer's outstanding invoices.

        Invoices are funded oldest first (transaction date, then creation
        order), each receiving ``min(remaining, pending)``.  Anything left
        over is returned as ``excess_amount`` and, on commit, recorded as
        customer credit.

        With ``simulate=True`` the exact same plan is computed and returned
        but nothing is written.

        Raises:
            ValidationError: empty customer, non-positive or over-precise
                amount, unknown payment method.
            UnbalancedInvoiceError: a stored invoice's paid and pending
                amounts drift from its total beyond ``balance_tolerance``.
            ConcurrencyConflictError: lock timeout or stale row version.
        """
        key = self._require_customer(customer_key)
        amount = self._require_amount(amount)
        method = self._require_method(method)
        payment_date = payment_date or self._clock.today()

        return self._settle(
            key,
            amount,
            payment_date,
            method,
            actor_id=actor_id,
            simulate=simulate,
            source=ReceiptSource.PAYMENT,
            load_rows=lambda: self._invoices.lock_outstanding(key),
            notes=notes or BULK_PAYMENT_NOTE,
        )

    def record_invoice_payment(
        self,
        invoice_id: UUID,
        amount,
        payment_date: date | None = None,
        method: str | None = None,
        *,
        actor_id: UUID,
        simulate: bool = False,
        notes: str | None = None,
    ) -> AllocationOutcome:
        """
        Apply a payment to one named invoice.

        Runs the same allocation path with a single target.  Anything
        beyond the invoice's pending amount (or the whole payment when the
        invoice is no longer outstanding) is excess and becomes credit.

        Raises:
            InvoiceNotFoundError: unknown or out-of-scope invoice.
        """
        amount = self._require_amount(amount)
        method = self._require_method(method)
        payment_date = payment_date or self._clock.today()
        key = self._invoices.get(invoice_id).customer_key

        def load_rows() -> list[InvoiceModel]:
            row = self._invoices.lock_invoice(invoice_id)
            return [row] if row.status in _OUTSTANDING_VALUES else []

        return self._settle(
            key,
            amount,
            payment_date,
            method,
            actor_id=actor_id,
            simulate=simulate,
            source=ReceiptSource.INVOICE_PAYMENT,
            load_rows=load_rows,
            notes=notes,
        )

    # =========================================================================
    # Credit
    # =========================================================================

    def apply_credit(
        self,
        customer_key: str,
        payment_date: date | None = None,
        *,
        actor_id: UUID,
        simulate: bool = False,
    ) -> AllocationOutcome:
        """
        Spend the customer's open credit on their outstanding invoices.

        The open credit total is allocated through the same path as a
        payment.  Credit rows are consumed oldest first by the applied
        total; the unconsumed remainder is reported as ``excess_amount`` and
        stays on the existing credit rows.  No new credit is created, and
        when nothing is outstanding no receipt is written either.
        """
        key = self._require_customer(customer_key)
        payment_date = payment_date or self._clock.today()

        with self._log_scope(customer_key=key, actor_id=actor_id):
            with self._locks.hold(self._lock_key(CUSTOMER_LOCK, key), self._lock_timeout):
                credits = self._open_credits(key, for_update=True)
                available = sum((c.remaining_amount for c in credits), ZERO)
                if available <= ZERO:
                    self.session.rollback()
                    logger.info("credit_apply_skipped", extra={"reason": "no open credit"})
                    return AllocationOutcome(
                        customer_key=key,
                        amount=ZERO,
                        payment_date=payment_date,
                        method=CREDIT_METHOD,
                        breakdown=(),
                        excess_amount=ZERO,
                        simulated=simulate,
                        source=ReceiptSource.CREDIT,
                    )

                return self._run_locked(
                    key,
                    available,
                    payment_date,
                    CREDIT_METHOD,
                    actor_id=actor_id,
                    simulate=simulate,
                    source=ReceiptSource.CREDIT,
                    load_rows=lambda: self._invoices.lock_outstanding(key),
                    notes=CREDIT_NOTE,
                    credits=credits,
                )

    def credit_balance(self, customer_key: str) -> Decimal:
        """Open credit for a customer."""
        key = self._require_customer(customer_key)
        return sum((c.remaining_amount for c in self._open_credits(key)), ZERO)

    def list_credits(self, customer_key: str) -> list[CustomerCredit]:
        key = self._require_customer(customer_key)
        return [c.to_dto() for c in self._open_credits(key)]

    def list_receipts(self, customer_key: str | None = None) -> list[PaymentReceipt]:
        """Committed receipts, newest first."""
        stmt = select(PaymentReceiptModel).where(PaymentReceiptModel.account_id == self.account_id)
        if customer_key:
            stmt = stmt.where(PaymentReceiptModel.customer_key == normalize_customer_key(customer_key))
        stmt = stmt.order_by(PaymentReceiptModel.receipt_seq.desc())
        return [r.to_dto() for r in self.session.execute(stmt).scalars()]

    # =========================================================================
    # Shared allocation path
    # =========================================================================

    def _settle(self, key: str, amount: Decimal, payment_date: date, method: str, **kwargs) -> AllocationOutcome:
        with self._log_scope(customer_key=key, actor_id=kwargs["actor_id"]):
            with self._locks.hold(self._lock_key(CUSTOMER_LOCK, key), self._lock_timeout):
                return self._run_locked(key, amount, payment_date, method, **kwargs)

    def _run_locked(
        self,
        key: str,
        amount: Decimal,
        payment_date: date,
        method: str,
        *,
        actor_id: UUID,
        simulate: bool,
        source: ReceiptSource,
        load_rows: Callable[[], list[InvoiceModel]],
        notes: str | None,
        credits: list[CustomerCreditModel] | None = None,
    ) -> AllocationOutcome:
        """Read, plan and either apply or discard.  Caller holds the lock."""
        if simulate:
            try:
                rows = self._checked(load_rows())
                plan = self._engine.plan(amount=amount, balances=[r.to_balance() for r in rows])
            finally:
                self.session.rollback()
            outcome = self._outcome(key, payment_date, method, source, plan, simulated=True)
            logger.info("allocation_simulated", extra=_log_fields(outcome))
            return outcome

        with self._transaction("customer", key):
            rows = self._checked(load_rows())
            plan = self._engine.plan(amount=amount, balances=[r.to_balance() for r in rows])
            if credits is not None and not plan.lines:
                # Credit stays where it is; a receipt would record nothing
                logger.info("credit_apply_skipped", extra={"reason": "nothing outstanding"})
                return self._outcome(key, payment_date, method, source, plan)
            receipt = self._record_receipt(key, payment_date, method, source, plan, actor_id, notes)

            by_id = {row.id: row for row in rows}
            for line in plan.lines:
                row = by_id[line.invoice_id]
                self._apply_line(row, line, actor_id)
                self._record_payment_line(row, line, receipt, payment_date, method, actor_id, notes)

            credit = None
            if credits is not None:
                self._consume_credits(credits, plan.total_applied, actor_id)
            elif plan.excess_amount > ZERO:
                credit = self._record_credit(key, receipt, plan.excess_amount, payment_date, actor_id)

            self.session.flush()
            outcome = self._outcome(
                key, payment_date, method, source, plan,
                receipt_id=receipt.id,
                credit_id=credit.id if credit is not None else None,
            )

        logger.info("allocation_committed", extra=_log_fields(outcome))
        if credit is not None:
            logger.info("credit_recorded", extra={
                "credit_id": str(outcome.credit_id),
                "amount": str(outcome.excess_amount),
            })
        return outcome

    def _checked(self, rows: list[InvoiceModel]) -> list[InvoiceModel]:
        """Refuse to plan over an invoice whose stored amounts no longer add up."""
        tolerance = self._config.balance_tolerance
        for row in rows:
            if not is_balanced(row.amount_paid, row.amount_pending, row.total_amount, tolerance):
                logger.error("invoice_unbalanced", extra={
                    "invoice_id": str(row.id),
                    "total_amount": str(row.total_amount),
                    "amount_paid": str(row.amount_paid),
                    "amount_pending": str(row.amount_pending),
                })
                raise UnbalancedInvoiceError(
                    str(row.id), str(row.total_amount), str(row.amount_paid), str(row.amount_pending),
                )
        return rows

    def _apply_line(self, row: InvoiceModel, line: AllocationLine, actor_id: UUID) -> None:
        row.amount_paid = line.paid_after
        row.amount_pending = line.pending_after
        row.status = line.new_status.value
        row.status_overridden = False
        row.updated_by_id = actor_id

    def _record_payment_line(
        self,
        row: InvoiceModel,
        line: AllocationLine,
        receipt: PaymentReceiptModel,
        payment_date: date,
        method: str,
        actor_id: UUID,
        notes: str | None,
    ) -> None:
        row.payments.append(
            InvoicePaymentModel(
                account_id=self.account_id,
                receipt_id=receipt.id,
                payment_seq=len(row.payments) + 1,
                amount=line.amount_applied,
                payment_date=payment_date,
                method=method,
                notes=notes,
                created_by_id=actor_id,
            )
        )

    def _record_receipt(
        self,
        key: str,
        payment_date: date,
        method: str,
        source: ReceiptSource,
        plan: AllocationPlan,
        actor_id: UUID,
        notes: str | None,
    ) -> PaymentReceiptModel:
        receipt = PaymentReceiptModel(
            account_id=self.account_id,
            receipt_seq=self._sequences.next_value(SequenceService.RECEIPT),
            customer_key=key,
            amount=plan.source_amount,
            payment_date=payment_date,
            method=method,
            source=source.value,
            applied_amount=plan.total_applied,
            excess_amount=plan.excess_amount,
            notes=notes,
            created_by_id=actor_id,
        )
        self.session.add(receipt)
        self.session.flush()
        return receipt

    def _record_credit(
        self,
        key: str,
        receipt: PaymentReceiptModel,
        amount: Decimal,
        recorded_on: date,
        actor_id: UUID,
    ) -> CustomerCreditModel:
        credit = CustomerCreditModel(
            account_id=self.account_id,
            customer_key=key,
            receipt_id=receipt.id,
            receipt_seq=receipt.receipt_seq,
            original_amount=amount,
            remaining_amount=amount,
            recorded_on=recorded_on,
            created_by_id=actor_id,
        )
        self.session.add(credit)
        self.session.flush()
        return credit

    def _consume_credits(
        self,
        credits: list[CustomerCreditModel],
        consumed: Decimal,
        actor_id: UUID,
    ) -> None:
        remaining = consumed
        for credit in credits:
            if remaining <= ZERO:
                break
            take = min(remaining, credit.remaining_amount)
            credit.remaining_amount -= take
            credit.updated_by_id = actor_id
            remaining -= take
        assert remaining == ZERO, f"credit over-consumed by {remaining}"
        logger.info("credit_consumed", extra={"amount": str(consumed)})

    def _open_credits(self, key: str, for_update: bool = False) -> list[CustomerCreditModel]:
        stmt = (
            select(CustomerCreditModel)
            .where(
                CustomerCreditModel.account_id == self.account_id,
                CustomerCreditModel.customer_key == key,
                CustomerCreditModel.remaining_amount > ZERO,
            )
            .order_by(CustomerCreditModel.receipt_seq)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self.session.execute(stmt).scalars())

    def _outcome(
        self,
        key: str,
        payment_date: date,
        method: str,
        source: ReceiptSource,
        plan: AllocationPlan,
        *,
        simulated: bool = False,
        receipt_id: UUID | None = None,
        credit_id: UUID | None = None,
    ) -> AllocationOutcome:
        return AllocationOutcome(
            customer_key=key,
            amount=plan.source_amount,
            payment_date=payment_date,
            method=method,
            breakdown=plan.lines,
            excess_amount=plan.excess_amount,
            simulated=simulated,
            source=source,
            receipt_id=receipt_id,
            credit_id=credit_id,
            skipped_invoice_ids=plan.skipped,
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _require_customer(self, customer_key: str | None) -> str:
        key = normalize_customer_key(customer_key)
        if not key:
            raise _rejected("customer_key", "is required")
        return key

    def _require_amount(self, amount) -> Decimal:
        try:
            value = check_money_precision(
                to_decimal(amount, "amount"), "amount", self._config.money_decimal_places,
            )
        except ValidationError as exc:
            raise _rejected(exc.field, exc.reason) from None
        if value <= ZERO:
            raise _rejected("amount", f"must be positive, got {value}")
        return value

    def _require_method(self, method: str | None) -> str:
        method = method or self._config.default_payment_method
        if method not in self._config.payment_methods:
            raise _rejected("method", f"{method!r} is not one of {', '.join(self._config.payment_methods)}")
        return method


def _rejected(field: str, reason: str) -> ValidationError:
    logger.warning("payment_rejected", extra={"field": field, "reason": reason})
    return ValidationError(field, reason)


def _log_fields(outcome: AllocationOutcome) -> dict:
    return {
        "source": outcome.source.value,
        "amount": str(outcome.amount),
        "total_applied": str(outcome.total_applied),
        "excess_amount": str(outcome.excess_amount),
        "invoices_funded": len(outcome.breakdown),
        "method": outcome.method,
        "payment_date": outcome.payment_date,
        "receipt_id": str(outcome.receipt_id) if outcome.receipt_id else None,
    }
