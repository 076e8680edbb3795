from datetime import date, datetime, timezone

import pytest

from hirepipe.services.errors import ValidationError
from hirepipe.services.fee_calculator import (
    FeeBreakdown,
    calculate_fee,
    calculate_fee_for_percentage,
    coerce_experience_level,
    estimate_fee_for_salary_range,
    fee_percentage_for_level,
    fee_percentage_for_salary,
    guarantee_end_date,
    remaining_due_date,
    split_fee,
)


def test_senior_150k_example():
    fee = calculate_fee(15_000_000, "senior")
    assert fee == FeeBreakdown(
        fee_percentage=18,
        placement_fee=2_700_000,
        upfront_amount=1_350_000,
        remaining_amount=1_350_000,
    )


@pytest.mark.parametrize("level", ["entry", "mid", "senior", "executive"])
@pytest.mark.parametrize("salary", [0, 1, 3, 99, 4_999_999, 8_000_001, 12_345_677, 25_000_003])
def test_upfront_plus_remaining_equals_fee(salary, level):
    fee = calculate_fee(salary, level)
    assert fee.upfront_amount + fee.remaining_amount == fee.placement_fee
    assert fee.placement_fee >= 0


def test_level_percentages():
    assert fee_percentage_for_level("entry") == 15
    assert fee_percentage_for_level("mid") == 15
    assert fee_percentage_for_level("senior") == 18
    assert fee_percentage_for_level("executive") == 20


def test_level_accepts_legacy_enum_spelling():
    assert coerce_experience_level("SENIOR_LEVEL").value == "senior"
    assert coerce_experience_level("Executive").value == "executive"


def test_rounding_is_half_up_on_cents():
    # 15% of 3 cents is 0.45 -> 0; 15% of 10 cents is 1.5 -> 2
    assert calculate_fee(3, "entry").placement_fee == 0
    assert calculate_fee(10, "entry").placement_fee == 2


def test_odd_fee_split_rounds_upfront_only():
    upfront, remaining = split_fee(101, 50)
    assert upfront == 51
    assert remaining == 50


def test_custom_upfront_percentage():
    fee = calculate_fee(10_000_000, "mid", upfront_percentage=30)
    assert fee.placement_fee == 1_500_000
    assert fee.upfront_amount == 450_000
    assert fee.remaining_amount == 1_050_000


def test_negative_salary_rejected():
    with pytest.raises(ValidationError, match="cannot be negative"):
        calculate_fee(-1, "senior")


def test_non_integer_salary_rejected():
    with pytest.raises(ValidationError, match="integer amount in cents"):
        calculate_fee(150_000.50, "senior")
    with pytest.raises(ValidationError, match="integer amount in cents"):
        calculate_fee(True, "senior")


def test_unknown_level_rejected():
    with pytest.raises(ValidationError, match="Unknown experience level"):
        calculate_fee(10_000_000, "intern")


def test_percentage_out_of_range_rejected():
    with pytest.raises(ValidationError, match="between 0 and 100"):
        calculate_fee(10_000_000, "senior", upfront_percentage=101)
    with pytest.raises(ValidationError, match="between 0 and 100"):
        calculate_fee_for_percentage(10_000_000, -5)


def test_salary_bands():
    assert fee_percentage_for_salary(7_999_999) is None
    assert fee_percentage_for_salary(8_000_000) == 15
    assert fee_percentage_for_salary(13_000_000) == 18
    assert fee_percentage_for_salary(17_000_000) == 20


def test_range_estimate_uses_midpoint():
    fee = estimate_fee_for_salary_range(12_000_000, 16_000_000)
    # midpoint 140k falls in the 18% band
    assert fee.fee_percentage == 18
    assert fee.placement_fee == 2_520_000


def test_range_estimate_edges():
    assert estimate_fee_for_salary_range(None, None) is None
    assert estimate_fee_for_salary_range(5_000_000, None).fee_percentage == 15
    with pytest.raises(ValidationError, match="cannot exceed"):
        estimate_fee_for_salary_range(10_000_000, 9_000_000)


def test_guarantee_and_due_dates():
    assert guarantee_end_date(date(2026, 1, 1)) == date(2026, 4, 1)
    paid = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert remaining_due_date(paid) == datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)
