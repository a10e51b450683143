from datetime import datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from circulation.fines import FinePolicy, ZERO, compute_fine, to_money

MANILA = ZoneInfo("Asia/Manila")
DUE = datetime(2025, 3, 3, 17, 0, tzinfo=MANILA)


@pytest.mark.parametrize(
    "elapsed, expected",
    [
        (timedelta(0), "0.00"),
        (timedelta(minutes=30), "0.00"),
        (timedelta(minutes=59, seconds=59), "0.00"),
        (timedelta(hours=1), "10.00"),
        (timedelta(hours=1, minutes=30), "10.00"),
        (timedelta(hours=2), "15.00"),
        (timedelta(hours=3), "20.00"),
        (timedelta(hours=25), "35.00"),
        (timedelta(hours=48), "50.00"),
        (timedelta(hours=49), "60.00"),
        (timedelta(days=2), "50.00"),
        (timedelta(days=3, hours=4, minutes=59), "100.00"),
    ],
)
def test_fine_tiers(elapsed, expected):
    assert compute_fine(DUE, DUE + elapsed) == Decimal(expected)


def test_no_fine_before_due_date():
    assert compute_fine(DUE, DUE - timedelta(days=3)) == ZERO


def test_fine_is_two_place_decimal():
    fine = compute_fine(DUE, DUE + timedelta(hours=5))
    assert isinstance(fine, Decimal)
    assert str(fine) == "30.00"


def test_hour_surcharge_restarts_at_day_boundary():
    # 23 whole hours is the most expensive partial day; the 24th hour
    # turns it into a single flat day charge.
    assert compute_fine(DUE, DUE + timedelta(hours=23)) == Decimal("120.00")
    assert compute_fine(DUE, DUE + timedelta(hours=24)) == Decimal("25.00")


def test_fine_is_non_decreasing_within_a_day():
    previous = ZERO
    for minutes in range(0, 24 * 60, 7):
        fine = compute_fine(DUE, DUE + timedelta(minutes=minutes))
        assert fine >= previous
        previous = fine


def test_fine_is_non_decreasing_across_full_days():
    fines = [compute_fine(DUE, DUE + timedelta(days=d)) for d in range(0, 10)]
    assert fines == sorted(fines)


def test_timezone_of_now_does_not_change_the_fine():
    now_utc = (DUE + timedelta(hours=26)).astimezone(ZoneInfo("UTC"))
    assert compute_fine(DUE, now_utc) == Decimal("40.00")


def test_custom_policy():
    policy = FinePolicy(per_day=Decimal("50.00"), first_hour=Decimal("5.00"), per_extra_hour=Decimal("1.50"))
    assert policy.compute(DUE, DUE + timedelta(days=1, hours=3)) == Decimal("58.00")


def test_to_money_rounds_half_up():
    assert to_money("2.345") == Decimal("2.35")
    assert to_money(10) == Decimal("10.00")
