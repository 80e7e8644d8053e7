"""
Tests for SettlementService (payment allocation).

Covers:
- Oldest-first allocation and the documented boundary cases
- Conservation and per-invoice invariants after commit
- Non-idempotence
- All-or-nothing commit on a mid-allocation failure
- Dry run parity with commit
- Payment lines, receipts, excess as customer credit
- Single-invoice payments
- Validation
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from billing_config.schema import BillingConfig
from billing_engines.status import PaymentStatus
from billing_kernel.exceptions import InvoiceNotFoundError, UnbalancedInvoiceError, ValidationError
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.settlement.models import BULK_PAYMENT_NOTE, ReceiptSource
from billing_modules.settlement.service import SettlementService


@pytest.fixture
def two_invoices(make_invoice):
    """Invoice A (1000, day 1) and invoice B (500, day 2) for one customer."""
    a = make_invoice("Ram Lal", date(2024, 1, 1), "1000")
    b = make_invoice("Ram Lal", date(2024, 1, 2), "500")
    return a, b


def assert_invariants(invoice):
    assert invoice.is_balanced(BillingConfig().balance_tolerance)
    assert invoice.status is invoice.derived_status


class TestFifoAllocation:

    def test_insertion_order_does_not_matter(self, make_invoice, settlement, actor_id):
        jan1 = make_invoice(invoice_date=date(2024, 1, 1), total="100")
        jan3 = make_invoice(invoice_date=date(2024, 1, 3), total="100")
        jan2 = make_invoice(invoice_date=date(2024, 1, 2), total="100")

        outcome = settlement.allocate("Ram Lal", Decimal("250"), date(2024, 2, 1), "cash", actor_id=actor_id)

        assert [line.invoice_id for line in outcome.breakdown] == [jan1.id, jan2.id, jan3.id]
        assert [line.new_status for line in outcome.breakdown] == [
            PaymentStatus.RECEIVED, PaymentStatus.RECEIVED, PaymentStatus.PARTIAL,
        ]

    def test_overpayment_boundary(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices

        outcome = settlement.allocate("Ram Lal", Decimal("1200"), date(2024, 1, 5), "cash", actor_id=actor_id)

        assert [(l.invoice_id, l.amount_applied, l.new_status) for l in outcome.breakdown] == [
            (a.id, Decimal("1000"), PaymentStatus.RECEIVED),
            (b.id, Decimal("200"), PaymentStatus.PARTIAL),
        ]
        assert outcome.excess_amount == Decimal("0")

        stored_b = invoice_store.get(b.id)
        assert stored_b.amount_pending == Decimal("300")
        assert stored_b.amount_paid == Decimal("200")
        assert stored_b.status is PaymentStatus.PARTIAL

    def test_full_overpayment_with_excess(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices

        outcome = settlement.allocate("Ram Lal", Decimal("1800"), date(2024, 1, 5), "cash", actor_id=actor_id)

        assert [(l.amount_applied, l.new_status) for l in outcome.breakdown] == [
            (Decimal("1000"), PaymentStatus.RECEIVED),
            (Decimal("500"), PaymentStatus.RECEIVED),
        ]
        assert outcome.excess_amount == Decimal("300")
        assert invoice_store.list_outstanding("Ram Lal") == []

    def test_nothing_outstanding(self, settlement, actor_id):
        outcome = settlement.allocate("Nobody", Decimal("750"), date(2024, 1, 5), actor_id=actor_id)

        assert outcome.breakdown == ()
        assert outcome.excess_amount == Decimal("750")

    def test_other_customers_untouched(self, two_invoices, make_invoice, settlement, invoice_store, actor_id):
        other = make_invoice("Shyam", date(2023, 12, 1), "100")

        settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)

        assert invoice_store.get(other.id).amount_paid == Decimal("0")

    def test_customer_name_matched_loosely(self, two_invoices, settlement, actor_id):
        outcome = settlement.allocate("  RAM   lal ", Decimal("100"), actor_id=actor_id)
        assert outcome.customer_key == "ram lal"
        assert len(outcome.breakdown) == 1


class TestInvariants:

    @pytest.mark.parametrize("amount", ["0.01", "999.99", "1000", "1000.01", "1499.99", "1500", "9999"])
    def test_conservation_and_invoice_totals(self, two_invoices, settlement, invoice_store, actor_id, amount):
        outcome = settlement.allocate("Ram Lal", Decimal(amount), actor_id=actor_id)

        assert outcome.total_applied + outcome.excess_amount == Decimal(amount)
        for invoice in two_invoices:
            assert_invariants(invoice_store.get(invoice.id))

    def test_successive_partial_payments(self, two_invoices, settlement, invoice_store, actor_id):
        for amount in ("300", "300", "300", "300", "300"):
            outcome = settlement.allocate("Ram Lal", Decimal(amount), actor_id=actor_id)
            assert outcome.total_applied + outcome.excess_amount == Decimal(amount)

        a, b = (invoice_store.get(i.id) for i in two_invoices)
        assert a.status is PaymentStatus.RECEIVED
        assert b.status is PaymentStatus.RECEIVED
        assert_invariants(a)
        assert_invariants(b)


class TestNonIdempotence:

    def test_same_call_twice_applies_twice(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices
        args = ("Ram Lal", Decimal("600"), date(2024, 1, 5), "cash")

        first = settlement.allocate(*args, actor_id=actor_id)
        second = settlement.allocate(*args, actor_id=actor_id)

        assert first.breakdown[0].invoice_id == a.id
        assert first.breakdown[0].amount_applied == Decimal("600")
        # Second identical call continues where the first stopped
        assert [(l.invoice_id, l.amount_applied) for l in second.breakdown] == [
            (a.id, Decimal("400")),
            (b.id, Decimal("200")),
        ]
        assert invoice_store.get(a.id).amount_paid == Decimal("1000")
        assert invoice_store.get(b.id).amount_paid == Decimal("200")
        assert first.receipt_id != second.receipt_id
        assert len(settlement.list_receipts("Ram Lal")) == 2


class TestAtomicity:

    def test_failure_mid_allocation_rolls_everything_back(
        self, two_invoices, settlement, invoice_store, monkeypatch, actor_id,
    ):
        a, b = two_invoices
        original = SettlementService._record_payment_line
        calls = []

        def failing(self, *args, **kwargs):
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(SettlementService, "_record_payment_line", failing)

        with pytest.raises(RuntimeError, match="disk full"):
            settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)

        for invoice in (invoice_store.get(a.id), invoice_store.get(b.id)):
            assert invoice.amount_paid == Decimal("0")
            assert invoice.status is PaymentStatus.PENDING
            assert invoice.payments == ()
        assert settlement.list_receipts() == []
        assert settlement.credit_balance("Ram Lal") == Decimal("0")

    def test_service_usable_after_rollback(self, two_invoices, settlement, monkeypatch, actor_id):
        def boom(self, *args, **kwargs):
            raise RuntimeError("boom")

        with monkeypatch.context() as m:
            m.setattr(SettlementService, "_record_receipt", boom)
            with pytest.raises(RuntimeError):
                settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)

        outcome = settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)
        assert outcome.total_applied == Decimal("100")


class TestSimulate:

    def test_dry_run_matches_commit(self, two_invoices, settlement, invoice_store, actor_id):
        preview = settlement.allocate("Ram Lal", Decimal("1200"), date(2024, 1, 5), "cash",
                                      actor_id=actor_id, simulate=True)
        committed = settlement.allocate("Ram Lal", Decimal("1200"), date(2024, 1, 5), "cash",
                                        actor_id=actor_id)

        assert preview.simulated is True
        assert committed.simulated is False
        assert preview.breakdown == committed.breakdown
        assert preview.excess_amount == committed.excess_amount

    def test_dry_run_writes_nothing(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices

        preview = settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id, simulate=True)

        assert preview.excess_amount == Decimal("300")
        assert preview.receipt_id is None
        assert preview.credit_id is None
        assert invoice_store.get(a.id).amount_paid == Decimal("0")
        assert invoice_store.get(b.id).status is PaymentStatus.PENDING
        assert settlement.list_receipts() == []
        assert settlement.credit_balance("Ram Lal") == Decimal("0")

    def test_dry_run_reports_before_and_after(self, two_invoices, settlement, actor_id):
        preview = settlement.allocate("Ram Lal", Decimal("1200"), actor_id=actor_id, simulate=True)

        line_b = preview.breakdown[1]
        assert line_b.pending_before == Decimal("500")
        assert line_b.pending_after == Decimal("300")

    def test_dry_run_logged_separately(self, two_invoices, settlement, actor_id, captured_logs):
        settlement.allocate("Ram Lal", Decimal("10"), actor_id=actor_id, simulate=True)
        messages = [r["message"] for r in captured_logs()]
        assert "allocation_simulated" in messages
        assert "allocation_committed" not in messages


class TestPaymentRecords:

    def test_payment_lines_and_receipt(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices

        outcome = settlement.allocate("Ram Lal", Decimal("1200"), date(2024, 1, 5), "bank_transfer",
                                      actor_id=actor_id)

        line = invoice_store.get(b.id).payments[0]
        assert line.amount == Decimal("200")
        assert line.payment_date == date(2024, 1, 5)
        assert line.method == "bank_transfer"
        assert line.receipt_id == outcome.receipt_id
        assert line.notes == BULK_PAYMENT_NOTE

        (receipt,) = settlement.list_receipts("Ram Lal")
        assert receipt.id == outcome.receipt_id
        assert receipt.amount == Decimal("1200")
        assert receipt.applied_amount == Decimal("1200")
        assert receipt.excess_amount == Decimal("0")
        assert receipt.source is ReceiptSource.PAYMENT

    def test_payment_date_defaults_to_clock(self, two_invoices, settlement, actor_id):
        outcome = settlement.allocate("Ram Lal", Decimal("5"), actor_id=actor_id)
        assert outcome.payment_date == date(2024, 2, 1)
        assert outcome.method == "cash"

    def test_allocation_clears_manual_override(self, two_invoices, settlement, invoice_store, actor_id):
        a, _ = two_invoices
        invoice_store.set_status_manually(a.id, "partial", actor_id=actor_id)

        settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)

        stored = invoice_store.get(a.id)
        assert stored.status is PaymentStatus.PARTIAL
        assert stored.status_overridden is False

    def test_overridden_closed_invoice_is_not_allocated(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices
        invoice_store.set_status_manually(a.id, "received", actor_id=actor_id)

        outcome = settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)

        assert [l.invoice_id for l in outcome.breakdown] == [b.id]
        stored_a = invoice_store.get(a.id)
        assert stored_a.amount_pending == Decimal("1000")
        assert stored_a.status is PaymentStatus.RECEIVED

    def test_reopened_paid_invoice_is_skipped(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices
        settlement.allocate("Ram Lal", Decimal("1000"), actor_id=actor_id)
        invoice_store.set_status_manually(a.id, "pending", actor_id=actor_id)

        outcome = settlement.allocate("Ram Lal", Decimal("50"), actor_id=actor_id)

        assert outcome.skipped_invoice_ids == (a.id,)
        assert [l.invoice_id for l in outcome.breakdown] == [b.id]
        assert invoice_store.get(a.id).status is PaymentStatus.PENDING

    def test_commit_logged(self, two_invoices, settlement, actor_id, captured_logs):
        settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)

        logs = captured_logs()
        committed = next(r for r in logs if r["message"] == "allocation_committed")
        assert Decimal(committed["total_applied"]) == Decimal("1500")
        assert Decimal(committed["excess_amount"]) == Decimal("300")
        assert committed["customer_key"] == "ram lal"
        assert committed["account_id"] == str(settlement.account_id)
        assert any(r["message"] == "credit_recorded" for r in logs)


class TestCustomerCredit:

    def test_excess_recorded_as_credit(self, two_invoices, settlement, actor_id):
        outcome = settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)

        assert outcome.credit_id is not None
        assert settlement.credit_balance("ram lal") == Decimal("300")
        (credit,) = settlement.list_credits("Ram Lal")
        assert credit.receipt_id == outcome.receipt_id
        assert credit.original_amount == credit.remaining_amount == Decimal("300")

    def test_plain_allocate_never_consumes_credit(self, two_invoices, make_invoice, settlement, actor_id):
        settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)
        make_invoice("Ram Lal", date(2024, 3, 1), "200")

        outcome = settlement.allocate("Ram Lal", Decimal("50"), actor_id=actor_id)

        assert outcome.total_applied == Decimal("50")
        assert settlement.credit_balance("Ram Lal") == Decimal("300")

    def test_apply_credit_funds_new_invoices(self, two_invoices, make_invoice, settlement, invoice_store, actor_id):
        settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)
        later = make_invoice("Ram Lal", date(2024, 3, 1), "200")

        outcome = settlement.apply_credit("Ram Lal", actor_id=actor_id)

        assert outcome.source is ReceiptSource.CREDIT
        assert outcome.amount == Decimal("300")
        assert [(l.invoice_id, l.amount_applied) for l in outcome.breakdown] == [(later.id, Decimal("200"))]
        assert outcome.excess_amount == Decimal("100")
        assert outcome.credit_id is None
        assert settlement.credit_balance("Ram Lal") == Decimal("100")
        assert invoice_store.get(later.id).status is PaymentStatus.RECEIVED

    def test_apply_credit_consumes_oldest_credit_first(self, make_invoice, settlement, actor_id):
        settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)
        settlement.allocate("Ram Lal", Decimal("70"), actor_id=actor_id)
        make_invoice("Ram Lal", date(2024, 3, 1), "120")

        settlement.apply_credit("Ram Lal", actor_id=actor_id)

        (remaining,) = settlement.list_credits("Ram Lal")
        assert remaining.original_amount == Decimal("70")
        assert remaining.remaining_amount == Decimal("50")

    def test_apply_credit_without_credit(self, two_invoices, settlement, invoice_store, actor_id):
        outcome = settlement.apply_credit("Ram Lal", actor_id=actor_id)

        assert outcome.amount == Decimal("0")
        assert outcome.breakdown == ()
        assert invoice_store.outstanding_balance("Ram Lal") == Decimal("1500")

    def test_apply_credit_with_nothing_outstanding(self, settlement, actor_id, captured_logs):
        settlement.allocate("Ram Lal", Decimal("200"), actor_id=actor_id)

        outcome = settlement.apply_credit("Ram Lal", actor_id=actor_id)

        assert outcome.breakdown == ()
        assert outcome.total_applied == Decimal("0")
        assert outcome.receipt_id is None
        assert len(settlement.list_receipts("Ram Lal")) == 1
        assert settlement.credit_balance("Ram Lal") == Decimal("200")
        skipped = next(r for r in captured_logs() if r["message"] == "credit_apply_skipped")
        assert skipped["reason"] == "nothing outstanding"

    def test_apply_credit_dry_run(self, two_invoices, make_invoice, settlement, actor_id):
        settlement.allocate("Ram Lal", Decimal("1800"), actor_id=actor_id)
        make_invoice("Ram Lal", date(2024, 3, 1), "200")

        preview = settlement.apply_credit("Ram Lal", actor_id=actor_id, simulate=True)

        assert preview.total_applied == Decimal("200")
        assert settlement.credit_balance("Ram Lal") == Decimal("300")


class TestStoredBalanceCheck:

    @staticmethod
    def _set_pending(session, invoice_id, pending):
        session.execute(
            update(InvoiceModel).where(InvoiceModel.id == invoice_id).values(amount_pending=Decimal(pending))
        )
        session.commit()

    def test_drifted_invoice_refuses_allocation(self, session, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices
        self._set_pending(session, a.id, "900")

        with pytest.raises(UnbalancedInvoiceError) as exc_info:
            settlement.allocate("Ram Lal", Decimal("1200"), actor_id=actor_id)

        assert exc_info.value.invoice_id == str(a.id)
        assert exc_info.value.code == "UNBALANCED_INVOICE"
        assert invoice_store.get(b.id).amount_paid == Decimal("0")
        assert settlement.list_receipts("Ram Lal") == []

    def test_dry_run_also_refuses(self, session, two_invoices, settlement, actor_id):
        a, _ = two_invoices
        self._set_pending(session, a.id, "1000.50")

        with pytest.raises(UnbalancedInvoiceError):
            settlement.allocate("Ram Lal", Decimal("10"), actor_id=actor_id, simulate=True)

    def test_drift_within_tolerance_allowed(self, session, two_invoices, settlement, invoice_store, actor_id):
        a, _ = two_invoices
        self._set_pending(session, a.id, "1000.005")
        assert invoice_store.get(a.id).is_balanced(Decimal("0.01"))
        assert not invoice_store.get(a.id).is_balanced()

        outcome = settlement.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)

        assert outcome.total_applied == Decimal("100")

    def test_zero_tolerance_config(self, session, account_id, locks, two_invoices, actor_id):
        a, _ = two_invoices
        self._set_pending(session, a.id, "1000.005")
        strict = SettlementService(session, account_id, config=BillingConfig(balance_tolerance=Decimal("0")),
                                   locks=locks)

        with pytest.raises(UnbalancedInvoiceError):
            strict.allocate("Ram Lal", Decimal("100"), actor_id=actor_id)


class TestInvoicePayment:

    def test_pays_named_invoice_out_of_order(self, two_invoices, settlement, invoice_store, actor_id):
        a, b = two_invoices

        outcome = settlement.record_invoice_payment(b.id, Decimal("500"), date(2024, 1, 9), "cheque",
                                                    actor_id=actor_id)

        assert [(l.invoice_id, l.new_status) for l in outcome.breakdown] == [(b.id, PaymentStatus.RECEIVED)]
        assert outcome.source is ReceiptSource.INVOICE_PAYMENT
        assert invoice_store.get(a.id).amount_paid == Decimal("0")

    def test_beyond_pending_becomes_credit(self, two_invoices, settlement, actor_id):
        _, b = two_invoices

        outcome = settlement.record_invoice_payment(b.id, Decimal("650"), actor_id=actor_id)

        assert outcome.excess_amount == Decimal("150")
        assert settlement.credit_balance("Ram Lal") == Decimal("150")

    def test_closed_invoice_takes_nothing(self, two_invoices, settlement, invoice_store, actor_id):
        _, b = two_invoices
        invoice_store.set_status_manually(b.id, "returned", actor_id=actor_id)

        outcome = settlement.record_invoice_payment(b.id, Decimal("10"), actor_id=actor_id)

        assert outcome.breakdown == ()
        assert outcome.excess_amount == Decimal("10")

    def test_unknown_invoice(self, settlement, actor_id):
        with pytest.raises(InvoiceNotFoundError):
            settlement.record_invoice_payment(uuid4(), Decimal("10"), actor_id=actor_id)


class TestValidation:

    @pytest.mark.parametrize("amount", ["0", "-5", Decimal("-0.01"), "abc", None, "10.001", "1e27"])
    def test_bad_amount(self, two_invoices, settlement, invoice_store, actor_id, amount):
        with pytest.raises(ValidationError) as exc_info:
            settlement.allocate("Ram Lal", amount, actor_id=actor_id)
        assert exc_info.value.field == "amount"
        assert invoice_store.outstanding_balance("Ram Lal") == Decimal("1500")

    @pytest.mark.parametrize("customer", ["", "   ", None])
    def test_missing_customer(self, settlement, actor_id, customer):
        with pytest.raises(ValidationError) as exc_info:
            settlement.allocate(customer, Decimal("10"), actor_id=actor_id)
        assert exc_info.value.field == "customer_key"

    def test_unknown_method(self, settlement, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            settlement.allocate("Ram Lal", Decimal("10"), method="barter", actor_id=actor_id)
        assert exc_info.value.field == "method"

    def test_configured_methods(self, session, account_id, locks, actor_id):
        config = BillingConfig(payment_methods=("upi", "cash"), default_payment_method="upi")
        service = SettlementService(session, account_id, config=config, locks=locks)

        assert service.allocate("X", Decimal("1"), actor_id=actor_id).method == "upi"
        with pytest.raises(ValidationError):
            service.allocate("X", Decimal("1"), method="cheque", actor_id=actor_id)

    def test_rejection_logged(self, settlement, actor_id, captured_logs):
        with pytest.raises(ValidationError):
            settlement.allocate("Ram Lal", Decimal("0"), actor_id=actor_id)
        record = next(r for r in captured_logs() if r["message"] == "payment_rejected")
        assert record["level"] == "WARNING"
        assert record["field"] == "amount"
