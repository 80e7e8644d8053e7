"""
Contract Domain Models (``billing_modules.contracts.models``).

Responsibility
--------------
Frozen dataclass value objects for vendor supply contracts and the advance
(deposit) held against each one.

Invariants enforced
-------------------
* A contract is created ``{advance: held, status: active}``.
* ``advance_status == RETURNED`` implies ``status == COMPLETED`` when the
  advance was released through ``ContractAdvanceLedger.return_advance``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class AdvanceStatus(str, Enum):
    HELD = "held"
    RETURNED = "returned"


class ContractStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Contract:
    """A vendor supply agreement with its embedded advance."""

    id: UUID
    account_id: UUID
    vendor_name: str
    vendor_key: str
    start_date: date
    end_date: date
    rate_per_unit: Decimal
    advance_amount: Decimal
    advance_status: AdvanceStatus
    status: ContractStatus
    advance_returned_date: date | None = None
    notes: str | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is ContractStatus.ACTIVE


@dataclass(frozen=True)
class AdvanceSummary:
    """Account-wide advance position."""

    active_contracts: int
    total_advance_held: Decimal
    total_advance_returned: Decimal
