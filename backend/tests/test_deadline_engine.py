"""
Tests for the deadline & interest engine.

Pure date and Decimal arithmetic: due dates, days remaining, urgency,
simple interest with holding minimums and admin fees, refunds and proration.
"""
import pytest
from datetime import date, datetime
from decimal import Decimal

from app.services.compliance import deadline_engine as de
from app.services.compliance.errors import UpstreamFailureError


# =============================================================================
# DUE DATE
# =============================================================================

class TestDueDate:
    """Return deadline is calendar days after move-out."""

    def test_san_francisco_21_days(self):
        assert de.compute_due_date(date(2026, 1, 1), 21) == date(2026, 1, 22)

    def test_crosses_month_and_year(self):
        assert de.compute_due_date(date(2025, 12, 20), 14) == date(2026, 1, 3)

    def test_leap_day_counted(self):
        assert de.compute_due_date(date(2028, 2, 20), 15) == date(2028, 3, 6)

    def test_missing_deadline_is_upstream_failure(self):
        with pytest.raises(UpstreamFailureError):
            de.compute_due_date(date(2026, 1, 1), None)


# =============================================================================
# DAYS REMAINING
# =============================================================================

class TestDaysRemaining:

    def test_plain_dates(self):
        assert de.days_remaining(date(2026, 1, 22), date(2026, 1, 10)) == 12
        assert de.days_remaining(date(2026, 1, 22), date(2026, 1, 22)) == 0
        assert de.days_remaining(date(2026, 1, 22), date(2026, 1, 25)) == -3

    def test_partial_day_rounds_up(self):
        # 11 days 15 hours before midnight of the due date
        assert de.days_remaining(date(2026, 1, 22), datetime(2026, 1, 10, 9, 0)) == 12

    def test_half_day_left(self):
        assert de.days_remaining(date(2026, 1, 22), datetime(2026, 1, 21, 12, 0)) == 1

    def test_exactly_at_deadline(self):
        assert de.days_remaining(date(2026, 1, 22), datetime(2026, 1, 22, 0, 0)) == 0

    def test_overdue_is_negative(self):
        assert de.days_remaining(date(2026, 1, 22), datetime(2026, 1, 24, 0, 0)) == -2


class TestUrgency:

    @pytest.mark.parametrize("remaining,expected", [
        (-1, "overdue"),
        (0, "critical"),
        (3, "critical"),
        (4, "warning"),
        (7, "warning"),
        (8, "normal"),
        (30, "normal"),
    ])
    def test_buckets(self, remaining, expected):
        assert de.deadline_urgency(remaining) == expected

    @pytest.mark.parametrize("remaining,label", [
        (-1, "1 day overdue"),
        (-3, "3 days overdue"),
        (0, "Due today"),
        (1, "1 day left"),
        (12, "12 days left"),
    ])
    def test_labels(self, remaining, label):
        assert de.format_days_remaining(remaining) == label


# =============================================================================
# INTEREST
# =============================================================================

class TestInterest:

    def test_one_year_at_five_percent(self):
        """$3,200 held 365 days at 5% -> $160.00."""
        assert de.compute_interest(Decimal("3200"), Decimal("0.05"), 365) == Decimal("160.00")

    def test_partial_year(self):
        # 1000 x 0.05 x 73 / 365 = 10.00
        assert de.compute_interest(Decimal("1000"), Decimal("0.05"), 73) == Decimal("10.00")

    def test_not_required(self):
        result = de.compute_interest(Decimal("3200"), Decimal("0.05"), 365, interest_required=False)
        assert result == Decimal("0.00")

    def test_missing_rate(self):
        assert de.compute_interest(Decimal("3200"), None, 365) == Decimal("0.00")

    def test_below_minimum_holding_period(self):
        result = de.compute_interest(Decimal("3200"), Decimal("0.05"), 364, min_holding_days=365)
        assert result == Decimal("0.00")

    def test_at_minimum_holding_period(self):
        result = de.compute_interest(Decimal("3200"), Decimal("0.05"), 365, min_holding_days=365)
        assert result == Decimal("160.00")

    def test_admin_fee_reduces_rate(self):
        """2% rate less a 1% admin fee on $10,000 for a year -> $100.00."""
        result = de.compute_interest(
            Decimal("10000"), Decimal("0.02"), 365, admin_fee_percent=Decimal("1.00")
        )
        assert result == Decimal("100.00")

    def test_admin_fee_never_makes_interest_negative(self):
        result = de.compute_interest(
            Decimal("10000"), Decimal("0.01"), 365, admin_fee_percent=Decimal("1.50")
        )
        assert result == Decimal("0.00")

    def test_float_inputs_do_not_leak_binary_error(self):
        assert de.compute_interest(3200.0, 0.05, 365) == Decimal("160.00")

    def test_held_days(self):
        assert de.held_days(date(2025, 1, 1), date(2026, 1, 1)) == 365
        assert de.held_days(date(2026, 1, 1), date(2025, 1, 1)) == 0


# =============================================================================
# MONEY
# =============================================================================

class TestMoney:

    def test_round_half_up(self):
        assert de.round_money(Decimal("2.345")) == Decimal("2.35")
        assert de.round_money(Decimal("2.344")) == Decimal("2.34")
        assert de.round_money(Decimal("-2.345")) == Decimal("-2.35")

    def test_to_decimal(self):
        assert de.to_decimal(0.1) == Decimal("0.1")
        assert de.to_decimal("525.00") == Decimal("525.00")
        assert de.to_decimal(None) == Decimal("0")

    def test_sum_deductions(self):
        assert de.sum_deductions(["150.00", Decimal("375"), 0.1, 0.2]) == Decimal("525.30")
        assert de.sum_deductions([]) == Decimal("0.00")

    def test_refund(self):
        assert de.compute_refund(Decimal("3200"), Decimal("160"), Decimal("525")) == Decimal("2835.00")

    def test_refund_can_go_negative(self):
        """Deductions above deposit + interest leave a balance owed by the tenant."""
        assert de.compute_refund(Decimal("1000"), Decimal("0"), Decimal("1100")) == Decimal("-100.00")


class TestProration:

    def test_half_life(self):
        assert de.compute_proration(Decimal("600"), 30) == Decimal("300.00")

    def test_fully_depreciated(self):
        assert de.compute_proration(Decimal("600"), 60) == Decimal("0.00")
        assert de.compute_proration(Decimal("600"), 90) == Decimal("0.00")

    def test_new_item(self):
        assert de.compute_proration(Decimal("600"), 0) == Decimal("600.00")

    def test_custom_useful_life(self):
        assert de.compute_proration(Decimal("1200"), 12, useful_life_months=48) == Decimal("900.00")

    def test_zero_useful_life(self):
        assert de.compute_proration(Decimal("600"), 10, useful_life_months=0) == Decimal("0.00")
