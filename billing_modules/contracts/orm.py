"""
SQLAlchemy ORM persistence for vendor contracts.

Invariants enforced
-------------------
* All monetary fields use ``Decimal`` (Numeric(38,9)) -- NEVER float.
* Enum fields stored as strings for readability and portability.
* ``version`` is the optimistic-lock column: a concurrent writer that read
  an older version fails its UPDATE instead of overwriting.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import ScopedBase


class ContractModel(ScopedBase):
    """
    A vendor supply contract with its advance.

    ``vendor_key`` is the normalized vendor name; invoices created against
    the contract inherit it as their customer key.
    """

    __tablename__ = "contracts"

    __table_args__ = (
        Index("idx_contracts_account_status", "account_id", "status"),
        Index("idx_contracts_vendor_key", "vendor_key"),
    )

    vendor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor_key: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate_per_unit: Mapped[Decimal] = mapped_column(nullable=False)
    advance_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    advance_status: Mapped[str] = mapped_column(String(20), nullable=False, default="held")
    advance_returned_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self):
        from billing_modules.contracts.models import (
            AdvanceStatus,
            Contract,
            ContractStatus,
        )

        return Contract(
            id=self.id,
            account_id=self.account_id,
            vendor_name=self.vendor_name,
            vendor_key=self.vendor_key,
            start_date=self.start_date,
            end_date=self.end_date,
            rate_per_unit=self.rate_per_unit,
            advance_amount=self.advance_amount,
            advance_status=AdvanceStatus(self.advance_status),
            status=ContractStatus(self.status),
            advance_returned_date=self.advance_returned_date,
            notes=self.notes,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<ContractModel {self.vendor_name} {self.status}/{self.advance_status}>"
