"""
Billing Engines - pure calculation layer.

Engines take plain values and return frozen results.  No database access,
no clock, no side effects beyond trace logging.
"""

from billing_engines.allocation import (
    AllocationLine,
    AllocationPlan,
    FifoAllocationEngine,
    OutstandingBalance,
    fifo_order,
)
from billing_engines.status import OUTSTANDING_STATUSES, PaymentStatus, classify

__all__ = [
    "AllocationLine",
    "AllocationPlan",
    "FifoAllocationEngine",
    "OutstandingBalance",
    "fifo_order",
    "OUTSTANDING_STATUSES",
    "PaymentStatus",
    "classify",
]
