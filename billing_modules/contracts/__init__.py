"""
Vendor Contracts Module.

Supply contracts and the held/returned lifecycle of their advance.
"""

from billing_modules.contracts.models import (
    AdvanceStatus,
    AdvanceSummary,
    Contract,
    ContractStatus,
)
from billing_modules.contracts.service import ContractAdvanceLedger

__all__ = [
    "AdvanceStatus",
    "AdvanceSummary",
    "Contract",
    "ContractAdvanceLedger",
    "ContractStatus",
]
