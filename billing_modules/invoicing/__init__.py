"""
Invoicing Module.

Billable sale records: creation, manual status override and the ordered
outstanding read that payment allocation consumes.
"""

from billing_modules.invoicing.models import (
    CategorySummary,
    Invoice,
    InvoicePayment,
    SaleCategory,
    SalesSummary,
    normalize_customer_key,
)
from billing_modules.invoicing.service import InvoiceStore

__all__ = [
    "CategorySummary",
    "Invoice",
    "InvoicePayment",
    "InvoiceStore",
    "SaleCategory",
    "SalesSummary",
    "normalize_customer_key",
]
