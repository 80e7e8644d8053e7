"""
Module: billing_engines.allocation
Responsibility:
    Plan how an incoming payment is spread across a customer's outstanding
    invoices, oldest first, and report whatever is left over.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The settlement service
    feeds it a snapshot of outstanding balances and either applies the
    resulting plan (commit) or returns it untouched (dry run).  Both paths
    call the same ``plan()`` so a preview can never disagree with the
    commit that follows it.

Invariants enforced:
    - Conservation: sum(line.amount_applied) + excess_amount == amount,
      exactly (Decimal arithmetic, no rounding anywhere in the plan).
    - Ordering: balances are consumed by (invoice_date, creation_seq).  A
      later-dated invoice is never touched while an earlier one still has
      a pending amount.
    - Per invoice: amount_applied <= pending_before, and
      paid_after + pending_after == paid_before + pending_before.

Failure modes:
    - ValueError on a non-positive amount or a negative pending balance.

Usage:
    engine = FifoAllocationEngine()
    plan = engine.plan(amount=Decimal("1200"), balances=balances)
    for line in plan.lines:
        ...
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from billing_engines.status import PaymentStatus, classify
from billing_engines.tracer import traced_engine
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class OutstandingBalance:
    """
    Snapshot of one invoice as seen by the planner.

    ``creation_seq`` breaks ties between invoices sharing a transaction date.
    """

    invoice_id: UUID
    invoice_date: date
    creation_seq: int
    total_amount: Decimal
    amount_paid: Decimal
    amount_pending: Decimal

    def __post_init__(self) -> None:
        if self.amount_pending < _ZERO:
            raise ValueError(
                f"Invoice {self.invoice_id} has negative pending amount {self.amount_pending}"
            )


@dataclass(frozen=True)
class AllocationLine:
    """Outcome for one invoice that received part of the payment."""

    invoice_id: UUID
    invoice_date: date
    amount_applied: Decimal
    paid_before: Decimal
    pending_before: Decimal
    paid_after: Decimal
    pending_after: Decimal
    new_status: PaymentStatus


@dataclass(frozen=True)
class AllocationPlan:
    """
    Complete allocation plan.

    Guarantees:
        - ``total_applied + excess_amount == source_amount``.
        - ``lines`` are in consumption order.
        - ``skipped`` lists outstanding invoices with nothing pending.
    """

    source_amount: Decimal
    lines: tuple[AllocationLine, ...]
    excess_amount: Decimal
    skipped: tuple[UUID, ...] = ()

    @property
    def total_applied(self) -> Decimal:
        return sum((line.amount_applied for line in self.lines), _ZERO)

    @property
    def is_fully_applied(self) -> bool:
        return self.excess_amount == _ZERO


def fifo_order(balances: Sequence[OutstandingBalance]) -> list[OutstandingBalance]:
    """Oldest transaction date first; creation order breaks ties."""
    return sorted(balances, key=lambda b: (b.invoice_date, b.creation_seq))


class FifoAllocationEngine:
    """
    Oldest-first payment allocation.

    Contract:
        Pure function of its inputs.  No I/O, no clock, no database.
    """

    @traced_engine("fifo_allocation", "1.0", fingerprint_fields=("amount",))
    def plan(
        self,
        *,
        amount: Decimal,
        balances: Sequence[OutstandingBalance],
    ) -> AllocationPlan:
        """
        Allocate ``amount`` across ``balances`` oldest first.

        Each invoice receives ``min(remaining, pending)``.  Invoices with
        nothing pending are skipped without a line.  Whatever remains after
        the last invoice is the excess.
        """
        if amount <= _ZERO:
            raise ValueError(f"Allocation amount must be positive, got {amount}")

        remaining = amount
        lines: list[AllocationLine] = []
        skipped: list[UUID] = []

        for balance in fifo_order(balances):
            if remaining <= _ZERO:
                break
            if balance.amount_pending <= _ZERO:
                skipped.append(balance.invoice_id)
                continue

            applied = min(remaining, balance.amount_pending)
            paid_after = balance.amount_paid + applied
            pending_after = balance.amount_pending - applied

            lines.append(
                AllocationLine(
                    invoice_id=balance.invoice_id,
                    invoice_date=balance.invoice_date,
                    amount_applied=applied,
                    paid_before=balance.amount_paid,
                    pending_before=balance.amount_pending,
                    paid_after=paid_after,
                    pending_after=pending_after,
                    new_status=classify(paid_after, balance.total_amount),
                )
            )
            remaining -= applied

        result = AllocationPlan(
            source_amount=amount,
            lines=tuple(lines),
            excess_amount=remaining,
            skipped=tuple(skipped),
        )

        # INVARIANT: conservation -- nothing created, nothing lost
        assert result.total_applied + result.excess_amount == amount, (
            f"Allocation conservation violated: "
            f"{result.total_applied} + {result.excess_amount} != {amount}"
        )

        logger.info("allocation_planned", extra={
            "source_amount": str(amount),
            "total_applied": str(result.total_applied),
            "excess_amount": str(result.excess_amount),
            "invoices_funded": len(lines),
            "invoices_skipped": len(skipped),
        })

        return result
