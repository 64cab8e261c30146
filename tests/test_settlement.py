"""
Tests for checkout settlement and cancellation refunds
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import integers, decimals

from parkwash.domain.services.settlement import (
    ZERO,
    billed_minutes,
    cancellation_refund,
    overrun_minutes,
    quote_checkout,
    to_money,
)

END = datetime(2025, 4, 10, 10, 0, 0)


class TestQuoteCheckout:

    @pytest.mark.unit
    def test_seven_minutes_late_bills_one_block(self):
        """10:00 scheduled, 10:07 actual at 60/h: 7 extra, 10 billed, 10.00"""
        quote = quote_checkout(END, END + timedelta(minutes=7), Decimal("60"))

        assert quote.extra_minutes == 7
        assert quote.billed_minutes == 10
        assert quote.extra_charge == Decimal("10.00")
        assert quote.requires_payment is True

    @pytest.mark.unit
    def test_leaving_early_costs_nothing(self):
        quote = quote_checkout(END, END - timedelta(minutes=30), Decimal("60"))

        assert quote.extra_minutes == 0
        assert quote.billed_minutes == 0
        assert quote.extra_charge == ZERO
        assert quote.requires_payment is False

    @pytest.mark.unit
    def test_exactly_on_time_costs_nothing(self):
        assert quote_checkout(END, END, Decimal("60")).extra_charge == ZERO

    @pytest.mark.unit
    def test_partial_minute_rounds_up(self):
        assert overrun_minutes(END, END + timedelta(seconds=1)) == 1
        assert overrun_minutes(END, END + timedelta(minutes=10)) == 10

    @pytest.mark.unit
    def test_exact_block_is_not_rounded_further(self):
        assert billed_minutes(10) == 10
        assert billed_minutes(11) == 20

    @pytest.mark.unit
    def test_non_integral_charge_rounds_half_up(self):
        # 10 min at 25/h = 4.1666.. -> 4.17
        quote = quote_checkout(END, END + timedelta(minutes=3), Decimal("25"))
        assert quote.extra_charge == Decimal("4.17")

    @pytest.mark.unit
    @h_settings(max_examples=200)
    @given(
        late=integers(min_value=0, max_value=24 * 60),
        rate=decimals(min_value=Decimal("1"), max_value=Decimal("500"), places=2),
    )
    def test_billing_properties(self, late, rate):
        quote = quote_checkout(END, END + timedelta(minutes=late), rate)

        assert quote.billed_minutes % 10 == 0
        assert quote.extra_minutes <= quote.billed_minutes < quote.extra_minutes + 10
        assert quote.extra_charge >= 0
        assert quote.extra_charge == to_money(Decimal(quote.billed_minutes) * rate / 60)


class TestCancellationRefund:

    @pytest.mark.unit
    def test_full_refund_inside_window(self):
        refund = cancellation_refund(END, END + timedelta(minutes=59), 3, Decimal("180"), Decimal("60"))
        assert refund == Decimal("180.00")

    @pytest.mark.unit
    def test_window_boundary_is_exclusive(self):
        # 60 minutes elapsed = one hour used of three
        refund = cancellation_refund(END, END + timedelta(minutes=60), 3, Decimal("180"), Decimal("60"))
        assert refund == Decimal("120.00")

    @pytest.mark.unit
    def test_started_hour_counts_as_unused(self):
        refund = cancellation_refund(END, END + timedelta(minutes=119), 3, Decimal("180"), Decimal("60"))
        assert refund == Decimal("120.00")

    @pytest.mark.unit
    def test_nothing_left_refunds_nothing(self):
        refund = cancellation_refund(END, END + timedelta(hours=5), 3, Decimal("180"), Decimal("60"))
        assert refund == ZERO

    @pytest.mark.unit
    def test_single_hour_booking_after_window(self):
        refund = cancellation_refund(END, END + timedelta(minutes=61), 1, Decimal("60"), Decimal("60"))
        assert refund == ZERO

    @pytest.mark.unit
    @given(
        elapsed=integers(min_value=0, max_value=48 * 60),
        hours=integers(min_value=1, max_value=24),
    )
    def test_refund_never_exceeds_payment(self, elapsed, hours):
        rate = Decimal("45.50")
        total = rate * hours
        refund = cancellation_refund(END, END + timedelta(minutes=elapsed), hours, total, rate)
        assert ZERO <= refund <= to_money(total)
