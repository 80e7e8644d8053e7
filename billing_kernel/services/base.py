"""
BaseService -- common constructor for account-scoped billing services.

Responsibility:
    Every billing module service works on behalf of exactly one owning farm
    account.  BaseService stores the SQLAlchemy ``Session``, the owning
    ``account_id``, the injected clock and the keyed lock registry, and
    provides the commit/rollback helper the services use to own their
    transaction boundary.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Extended by
    InvoiceStore, SettlementService and ContractAdvanceLedger.

Failure modes:
    - ``StaleDataError`` raised by SQLAlchemy at flush/commit time (a row
      version changed underneath us) is translated into
      ``ConcurrencyConflictError`` after rollback.  Every other exception is
      re-raised unchanged after rollback.
"""

from abc import ABC
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_kernel.concurrency import KeyedLockRegistry, default_lock_registry
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import ConcurrencyConflictError
from billing_kernel.logging_config import LogContext


class BaseService(ABC):
    """
    Abstract base class for account-scoped billing services.

    Contract:
        Accepts a SQLAlchemy ``Session`` and the owning ``account_id``.
        Write operations run inside ``self._transaction(...)``, which commits
        on success and rolls back on any failure.
    """

    def __init__(
        self,
        session: Session,
        account_id: UUID,
        clock: Clock | None = None,
        locks: KeyedLockRegistry | None = None,
        lock_timeout: float = 10.0,
    ):
        self.session = session
        self.account_id = account_id
        self._clock = clock or SystemClock()
        self._locks = locks or default_lock_registry
        self._lock_timeout = lock_timeout

    @contextmanager
    def _transaction(self, entity_type: str, entity_key: str) -> Iterator[None]:
        """
        Commit on success, roll back and re-raise on failure.

        ``StaleDataError`` becomes ``ConcurrencyConflictError`` so callers
        see one typed error for every lost race.
        """
        try:
            yield
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise ConcurrencyConflictError(
                entity_type, entity_key, "row version changed during update"
            ) from exc
        except Exception:
            self.session.rollback()
            raise

    def _lock_key(self, kind: str, key: str) -> tuple[str, str, str]:
        return (str(self.account_id), kind, key)

    def _log_scope(self, **fields):
        """Bind the owning account, plus ``fields``, onto every log record in the block."""
        return LogContext.bind(account_id=self.account_id, **fields)
