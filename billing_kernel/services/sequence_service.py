"""
SequenceService -- monotonic sequence allocation.

Responsibility:
    Provides strictly increasing sequence numbers.  Invoices store one in
    ``creation_seq`` so that two invoices with the same transaction date are
    always consumed in creation order; receipts store one in
    ``receipt_seq``.

    On dialects with native sequences (PostgreSQL) the well-known names are
    served by ``nextval()``, which never blocks and never holds a lock for
    the rest of the caller's transaction.  Elsewhere (SQLite) a dedicated
    counter table is incremented with an atomic ``UPDATE ... RETURNING``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by InvoiceStore when an invoice is created and by
    SettlementService when a receipt is written.

Invariants enforced:
    - Sequences are strictly monotonic.  The aggregate-max-plus-one pattern
      is never used; the sequence or counter row is the sole source of
      truth.
    - Counter rows are transactional: an increment is only visible after
      the caller's transaction commits and a rollback returns the value.
      Native sequences are not; a rolled-back ``nextval()`` leaves a gap.

Failure modes:
    - IntegrityError: two transactions racing to create a counter that was
      never initialized.  create_tables() seeds the well-known counters so
      this only happens for ad-hoc sequence names.
"""

from sqlalchemy import BigInteger, Sequence, String, select, update
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")

# Created by create_all() only on dialects that support sequences
NATIVE_SEQUENCES = {
    "invoice": Sequence("invoice_creation_seq", metadata=Base.metadata),
    "receipt": Sequence("payment_receipt_seq", metadata=Base.metadata),
}

class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - Strictly monotonic values per sequence name.
        - Well-known names never wait on another transaction where the
          database has native sequences.  Counter rows hold their row lock
          until the caller's transaction ends.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    INVOICE = "invoice"
    RECEIPT = "receipt"

    WELL_KNOWN = (INVOICE, RECEIPT)

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Well-known names on a sequence-capable database come from
        ``nextval()``.  Otherwise the counter row is incremented in a single
        ``UPDATE ... RETURNING`` (created on first use); the UPDATE takes
        the row lock, so a concurrent caller blocks until this transaction
        ends and then sees the committed value.
        """
        native = self._native(sequence_name)
        if native is not None:
            value = self._session.scalar(select(native.next_value()))
            logger.debug(
                "sequence_allocated",
                extra={"sequence_name": sequence_name, "value": value, "native": True},
            )
            return value

        table = SequenceCounter.__table__
        value = self._session.execute(
            update(table)
            .where(table.c.name == sequence_name)
            .values(current_value=table.c.current_value + 1)
            .returning(table.c.current_value)
        ).scalar_one_or_none()

        if value is None:
            counter = SequenceCounter(name=sequence_name, current_value=1)
            self._session.add(counter)
            self._session.flush()
            value = counter.current_value

        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value

    def _native(self, sequence_name: str) -> Sequence | None:
        seq = NATIVE_SEQUENCES.get(sequence_name)
        if seq is None or not self._session.get_bind().dialect.supports_sequences:
            return None
        return seq

    def current_value(self, sequence_name: str) -> int | None:
        """Counter-row value without incrementing, or None.  Native sequences are not read."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def initialize_sequences(self) -> None:
        """
        Initialize all well-known sequences.

        Called during database setup so that concurrent first use never
        races on counter creation.
        """
        for name in self.WELL_KNOWN:
            existing = self._session.execute(
                select(SequenceCounter)
                .where(SequenceCounter.name == name)
            ).scalar_one_or_none()

            if existing is None:
                self._session.add(SequenceCounter(name=name, current_value=0))

        self._session.flush()
