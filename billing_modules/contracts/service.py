"""
ContractAdvanceLedger -- vendor contracts and the advance held against them.

The only transition this ledger owns on the core path is
``return_advance``: ``{held, active} -> {returned, completed}``, applied as
one atomic two-field update and executed at most once per contract.

Serialization per contract comes from three layers, outermost first:

1. the in-process keyed lock ``("contract", contract_id)``
2. ``SELECT ... FOR UPDATE`` on the contract row (PostgreSQL)
3. the ``version`` column; a stale UPDATE raises ``ConcurrencyConflictError``

Of N concurrent ``return_advance`` calls exactly one succeeds; the rest see
the already-returned state and fail with ``AdvanceNotHeldError``.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import BillingConfig
from billing_kernel.concurrency import KeyedLockRegistry
from billing_kernel.db.types import ZERO, check_money_precision, to_decimal
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import (
    AdvanceNotHeldError,
    ContractNotActiveError,
    ContractNotFoundError,
    InvalidStateError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_modules.contracts.models import (
    AdvanceStatus,
    AdvanceSummary,
    Contract,
    ContractStatus,
)
from billing_modules.contracts.orm import ContractModel
from billing_modules.invoicing.models import normalize_customer_key

logger = get_logger("modules.contracts.service")

CONTRACT_LOCK = "contract"


class ContractAdvanceLedger(BaseService):
    """
    Account-scoped contract and advance service.

    Transaction boundary: every write commits on success and rolls back on
    failure.
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

    # =========================================================================
    # Contracts
    # =========================================================================

    def create_contract(
        self,
        *,
        vendor_name: str,
        start_date: date,
        end_date: date,
        rate_per_unit,
        actor_id: UUID,
        advance_amount=ZERO,
        notes: str | None = None,
    ) -> Contract:
        """
        Open a contract with its advance held.

        Raises:
            ValidationError: missing vendor, end date not after start date,
                non-positive rate, negative or over-precise advance.
        """
        vendor_key = normalize_customer_key(vendor_name)
        if not vendor_key:
            raise ValidationError("vendor_name", "is required")
        if end_date <= start_date:
            raise ValidationError("end_date", "must be after start_date")

        rate = to_decimal(rate_per_unit, "rate_per_unit")
        if rate <= ZERO:
            raise ValidationError("rate_per_unit", f"must be positive, got {rate}")

        advance = check_money_precision(
            to_decimal(advance_amount, "advance_amount"),
            "advance_amount",
            self._config.money_decimal_places,
        )
        if advance < ZERO:
            raise ValidationError("advance_amount", f"cannot be negative, got {advance}")

        with self._transaction("contract", vendor_key):
            row = ContractModel(
                account_id=self.account_id,
                vendor_name=" ".join(vendor_name.split()),
                vendor_key=vendor_key,
                start_date=start_date,
                end_date=end_date,
                rate_per_unit=rate,
                advance_amount=advance,
                advance_status=AdvanceStatus.HELD.value,
                status=ContractStatus.ACTIVE.value,
                notes=notes,
                created_by_id=actor_id,
            )
            self.session.add(row)
            self.session.flush()
            contract = row.to_dto()

        with self._log_scope(contract_id=contract.id, actor_id=actor_id):
            logger.info("contract_created", extra={
                "vendor_key": vendor_key,
                "advance_amount": str(advance),
            })
        return contract

    def get_contract(self, contract_id: UUID) -> Contract:
        return self._scoped(contract_id).to_dto()

    def list_contracts(self, status: ContractStatus | str | None = None) -> list[Contract]:
        """Contracts newest start date first, optionally by status."""
        stmt = select(ContractModel).where(ContractModel.account_id == self.account_id)
        if status is not None:
            try:
                status = ContractStatus(status)
            except ValueError:
                raise ValidationError("status", f"unknown contract status {status!r}") from None
            stmt = stmt.where(ContractModel.status == status.value)
        stmt = stmt.order_by(ContractModel.start_date.desc(), ContractModel.created_at.desc())
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def advance_summary(self) -> AdvanceSummary:
        rows = self.session.execute(
            select(ContractModel).where(ContractModel.account_id == self.account_id)
        ).scalars().all()

        active = sum(1 for r in rows if r.status == ContractStatus.ACTIVE.value)
        held = sum(
            (r.advance_amount for r in rows if r.advance_status == AdvanceStatus.HELD.value),
            ZERO,
        )
        returned = sum(
            (r.advance_amount for r in rows if r.advance_status == AdvanceStatus.RETURNED.value),
            ZERO,
        )
        return AdvanceSummary(
            active_contracts=active,
            total_advance_held=held,
            total_advance_returned=returned,
        )

    # =========================================================================
    # Advance lifecycle
    # =========================================================================

    def return_advance(
        self,
        contract_id: UUID,
        *,
        actor_id: UUID,
        returned_date: date | None = None,
    ) -> Contract:
        """
        Release the advance and complete the contract in one step.

        Preconditions: advance held and contract active.  On violation
        nothing changes.

        Raises:
            ContractNotFoundError: unknown or out-of-scope contract.
            AdvanceNotHeldError: the advance was already returned.
            ContractNotActiveError: the contract is completed or cancelled.
            ConcurrencyConflictError: lock timeout or stale row version.
        """
        self._scoped(contract_id)
        returned_on = returned_date or self._clock.today()

        with self._log_scope(contract_id=contract_id, actor_id=actor_id):
            with self._locks.hold(self._lock_key(CONTRACT_LOCK, str(contract_id)), self._lock_timeout):
                try:
                    with self._transaction("contract", str(contract_id)):
                        row = self._lock(contract_id)
                        if row.advance_status != AdvanceStatus.HELD.value:
                            raise AdvanceNotHeldError(str(contract_id), row.advance_status)
                        if row.status != ContractStatus.ACTIVE.value:
                            raise ContractNotActiveError(str(contract_id), row.status)

                        row.advance_status = AdvanceStatus.RETURNED.value
                        row.status = ContractStatus.COMPLETED.value
                        row.advance_returned_date = returned_on
                        row.updated_by_id = actor_id
                        self.session.flush()
                        contract = row.to_dto()
                except InvalidStateError as exc:
                    logger.warning("advance_return_rejected", extra={
                        "error_code": exc.code,
                        "reason": str(exc),
                    })
                    raise

            logger.info("advance_returned", extra={
                "advance_amount": str(contract.advance_amount),
                "returned_date": returned_on,
            })
        return contract

    def cancel_contract(self, contract_id: UUID, *, actor_id: UUID) -> Contract:
        """
        Cancel an active contract.  The advance stays held; releasing it
        is a separate business decision outside this ledger.
        """
        self._scoped(contract_id)

        with self._log_scope(contract_id=contract_id, actor_id=actor_id):
            with self._locks.hold(self._lock_key(CONTRACT_LOCK, str(contract_id)), self._lock_timeout):
                with self._transaction("contract", str(contract_id)):
                    row = self._lock(contract_id)
                    if row.status != ContractStatus.ACTIVE.value:
                        raise ContractNotActiveError(str(contract_id), row.status)
                    row.status = ContractStatus.CANCELLED.value
                    row.updated_by_id = actor_id
                    self.session.flush()
                    contract = row.to_dto()

            logger.info("contract_cancelled", extra={
                "advance_status": contract.advance_status.value,
            })
        return contract

    # =========================================================================
    # Internals
    # =========================================================================

    def _scoped(self, contract_id: UUID) -> ContractModel:
        row = self.session.execute(
            select(ContractModel).where(
                ContractModel.id == contract_id,
                ContractModel.account_id == self.account_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise ContractNotFoundError(str(contract_id))
        return row

    def _lock(self, contract_id: UUID) -> ContractModel:
        row = self.session.execute(
            select(ContractModel)
            .where(
                ContractModel.id == contract_id,
                ContractModel.account_id == self.account_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise ContractNotFoundError(str(contract_id))
        return row
