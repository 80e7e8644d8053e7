"""
Pytest fixtures for the billing kernel test suite.

Provides:
- In-memory SQLite engine + session per test (tables created fresh)
- File-backed SQLite engine + session factory for multi-threaded tests
- Structured log capture
- Deterministic clock, account/actor ids, service factories

SQLite stands in for PostgreSQL here.  It has no row locks, so the
in-process keyed locks and the version columns are what the concurrency
tests exercise.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import create_engine

from billing_config.schema import BillingConfig
from billing_kernel.concurrency import KeyedLockRegistry
from billing_kernel.db.engine import build_engine, create_tables
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules.contracts.service import ContractAdvanceLedger
from billing_modules.invoicing.models import SaleCategory
from billing_modules.invoicing.service import InvoiceStore
from billing_modules.settlement.service import SettlementService


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as running real threads against a file database"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, settlement):
            settlement.allocate(...)
            logs = captured_logs()
            assert any(r["message"] == "allocation_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory database with every table created."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database shared by worker threads, one session each."""
    eng = build_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, expire_on_commit=False)


# =============================================================================
# Identity / clock / config
# =============================================================================


@pytest.fixture
def account_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_account_id() -> UUID:
    return uuid4()


@pytest.fixture
def actor_id() -> UUID:
    return uuid4()


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def billing_config():
    return BillingConfig(database_url="sqlite://", lock_timeout_seconds=5.0)


@pytest.fixture
def locks():
    """Per-test lock registry so that tests never contend with each other."""
    return KeyedLockRegistry()


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def invoice_store(session, account_id, deterministic_clock, billing_config, locks):
    return InvoiceStore(
        session, account_id, clock=deterministic_clock, config=billing_config, locks=locks,
    )


@pytest.fixture
def settlement(session, account_id, deterministic_clock, billing_config, locks):
    return SettlementService(
        session, account_id, clock=deterministic_clock, config=billing_config, locks=locks,
    )


@pytest.fixture
def ledger(session, account_id, deterministic_clock, billing_config, locks):
    return ContractAdvanceLedger(
        session, account_id, clock=deterministic_clock, config=billing_config, locks=locks,
    )


@pytest.fixture
def make_invoice(invoice_store, actor_id):
    """
    Factory fixture creating an invoice whose total equals ``total``.

    Usage::

        a = make_invoice("Ram Lal", date(2024, 1, 1), "1000")
    """

    def _create(customer="Ram Lal", invoice_date=date(2024, 1, 1), total="1000", **kwargs):
        kwargs.setdefault("category", SaleCategory.SPOT_MARKET)
        return invoice_store.create(
            customer_name=customer,
            invoice_date=invoice_date,
            quantity=Decimal("1"),
            unit_rate=Decimal(total),
            actor_id=actor_id,
            **kwargs,
        )

    return _create


@pytest.fixture
def make_contract(ledger, actor_id):
    def _create(vendor="Gopal Dairy", advance="5000", **kwargs):
        kwargs.setdefault("start_date", date(2024, 1, 1))
        kwargs.setdefault("end_date", date(2024, 12, 31))
        kwargs.setdefault("rate_per_unit", Decimal("42.50"))
        return ledger.create_contract(
            vendor_name=vendor,
            advance_amount=Decimal(advance),
            actor_id=actor_id,
            **kwargs,
        )

    return _create
