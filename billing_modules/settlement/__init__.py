"""
Settlement Module.

Oldest-first payment allocation, dry runs, receipts and customer credit.
"""

from billing_modules.settlement.models import (
    AllocationOutcome,
    CustomerCredit,
    PaymentReceipt,
    ReceiptSource,
)
from billing_modules.settlement.service import SettlementService

__all__ = [
    "AllocationOutcome",
    "CustomerCredit",
    "PaymentReceipt",
    "ReceiptSource",
    "SettlementService",
]
