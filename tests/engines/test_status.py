"""
Tests for the payment status classifier.
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billing_engines.status import OUTSTANDING_STATUSES, PaymentStatus, classify, is_balanced


class TestClassify:

    @pytest.mark.parametrize(
        "paid, total, expected",
        [
            ("0", "1000", PaymentStatus.PENDING),
            ("0.00", "1000", PaymentStatus.PENDING),
            ("0.01", "1000", PaymentStatus.PARTIAL),
            ("999.99", "1000", PaymentStatus.PARTIAL),
            ("1000", "1000", PaymentStatus.RECEIVED),
            ("1000.00", "1000", PaymentStatus.RECEIVED),
            ("1200", "1000", PaymentStatus.RECEIVED),
        ],
    )
    def test_boundaries(self, paid, total, expected):
        assert classify(Decimal(paid), Decimal(total)) is expected

    def test_returned_is_never_derived(self):
        for paid in ("0", "1", "500", "1000", "5000"):
            assert classify(Decimal(paid), Decimal("1000")) is not PaymentStatus.RETURNED

    @given(
        paid=st.decimals(min_value=0, max_value=10**9, places=2),
        total=st.decimals(min_value="0.01", max_value=10**9, places=2),
    )
    def test_total_function(self, paid, total):
        status = classify(paid, total)
        assert status in (PaymentStatus.PENDING, PaymentStatus.PARTIAL, PaymentStatus.RECEIVED)
        if paid == 0:
            assert status is PaymentStatus.PENDING
        elif paid >= total:
            assert status is PaymentStatus.RECEIVED
        else:
            assert status is PaymentStatus.PARTIAL


class TestOutstanding:

    def test_outstanding_statuses(self):
        assert OUTSTANDING_STATUSES == {PaymentStatus.PENDING, PaymentStatus.PARTIAL}

    def test_is_outstanding_property(self):
        assert PaymentStatus.PENDING.is_outstanding
        assert PaymentStatus.PARTIAL.is_outstanding
        assert not PaymentStatus.RECEIVED.is_outstanding
        assert not PaymentStatus.RETURNED.is_outstanding

    def test_status_values_round_trip_from_strings(self):
        assert PaymentStatus("partial") is PaymentStatus.PARTIAL


class TestIsBalanced:

    @pytest.mark.parametrize(
        "paid, pending, total, tolerance, expected",
        [
            ("0", "1000", "1000", "0", True),
            ("400", "600", "1000", "0", True),
            ("400", "600.005", "1000", "0", False),
            ("400", "600.005", "1000", "0.01", True),
            ("400", "599.99", "1000", "0.01", True),
            ("400", "599.98", "1000", "0.01", False),
            ("0", "900", "1000", "0.01", False),
        ],
    )
    def test_tolerance(self, paid, pending, total, tolerance, expected):
        assert is_balanced(Decimal(paid), Decimal(pending), Decimal(total), Decimal(tolerance)) is expected
