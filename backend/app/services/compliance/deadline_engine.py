"""
Deadline & Interest Engine

Pure date and money arithmetic derived from a rule snapshot and case facts.
No database access, no clock reads: callers pass "now" explicitly.

Key behaviors:
- Return deadline is calendar days after move-out (not business days)
- Days remaining rounds up partial days; negative means overdue
- Interest is simple interest on the deposit, net of any admin fee
- Money is Decimal throughout and rounded half-up once, at the end
"""
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

from .errors import UpstreamFailureError


# =============================================================================
# CONSTANTS
# =============================================================================

CENTS = Decimal("0.01")
DAYS_PER_YEAR = Decimal("365")
DEFAULT_USEFUL_LIFE_MONTHS = 60  # Carpet, paint, appliances

# Urgency thresholds (days remaining)
CRITICAL_DAYS = 3
WARNING_DAYS = 7


# =============================================================================
# MONEY HELPERS
# =============================================================================

def to_decimal(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Coerce a numeric input to Decimal without binary float artifacts."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


# =============================================================================
# DEADLINES
# =============================================================================

def compute_due_date(move_out_date: date, return_deadline_days: Optional[int]) -> date:
    """
    Calculate the deposit return deadline.

    A missing deadline on a resolved rule set is bad seed data, not user error.
    """
    if return_deadline_days is None:
        raise UpstreamFailureError(
            "Rule set is missing return_deadline_days",
            details={"field": "return_deadline_days"},
        )
    return move_out_date + timedelta(days=int(return_deadline_days))


def days_remaining(due_date: date, now: Union[datetime, date]) -> int:
    """
    Whole days until the deadline, rounding partial days up.

    The deadline is treated as starting at midnight of due_date.
    """
    if not isinstance(now, datetime):
        return (due_date - now).days
    if now.tzinfo is not None:
        now = now.replace(tzinfo=None)
    delta = datetime.combine(due_date, time.min) - now
    return math.ceil(delta.total_seconds() / 86400)


def deadline_urgency(remaining: int) -> str:
    """Bucket days remaining into overdue / critical / warning / normal."""
    if remaining < 0:
        return "overdue"
    if remaining <= CRITICAL_DAYS:
        return "critical"
    if remaining <= WARNING_DAYS:
        return "warning"
    return "normal"


def format_days_remaining(remaining: int) -> str:
    if remaining < 0:
        overdue = abs(remaining)
        return f"{overdue} day{'s' if overdue != 1 else ''} overdue"
    if remaining == 0:
        return "Due today"
    if remaining == 1:
        return "1 day left"
    return f"{remaining} days left"


# =============================================================================
# INTEREST
# =============================================================================

def held_days(lease_start_date: date, end_date: date) -> int:
    """Days the deposit was held (never negative)."""
    return max((end_date - lease_start_date).days, 0)


def compute_interest(
    deposit_amount,
    rate,
    days_held: int,
    *,
    interest_required: bool = True,
    min_holding_days: Optional[int] = None,
    admin_fee_percent=None,
) -> Decimal:
    """
    Simple interest owed on a deposit.

    interest = deposit x (rate - admin_fee_percent / 100) x days_held / 365

    Returns 0.00 when interest is not required, the rate is missing, or the
    deposit was held for less than the rule's minimum holding period.
    """
    if not interest_required or rate is None:
        return round_money(Decimal("0"))
    if min_holding_days is not None and days_held < min_holding_days:
        return round_money(Decimal("0"))

    effective_rate = to_decimal(rate)
    if admin_fee_percent is not None:
        effective_rate -= to_decimal(admin_fee_percent) / Decimal("100")
    if effective_rate <= 0:
        return round_money(Decimal("0"))

    raw = to_decimal(deposit_amount) * effective_rate * Decimal(days_held) / DAYS_PER_YEAR
    return round_money(raw)


# =============================================================================
# TOTALS
# =============================================================================

def sum_deductions(amounts: Iterable) -> Decimal:
    total = sum((to_decimal(a) for a in amounts), Decimal("0"))
    return round_money(total)


def compute_refund(deposit_amount, interest, total_deductions) -> Decimal:
    """Amount due back to the tenant: deposit + interest - deductions."""
    raw = to_decimal(deposit_amount) + to_decimal(interest) - to_decimal(total_deductions)
    return round_money(raw)


def compute_proration(
    original_cost,
    item_age_months: int,
    useful_life_months: int = DEFAULT_USEFUL_LIFE_MONTHS,
) -> Decimal:
    """
    Remaining value of an item after straight-line depreciation.

    A tenant can only be charged for the undepreciated share of a replacement.
    """
    if useful_life_months <= 0:
        return round_money(Decimal("0"))
    remaining_months = max(useful_life_months - max(item_age_months, 0), 0)
    raw = to_decimal(original_cost) * Decimal(remaining_months) / Decimal(useful_life_months)
    return round_money(raw)
