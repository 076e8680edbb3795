"""Placement fee math.

The experience-level lookup is the only scheme used to bill a placement.
``estimate_fee_for_salary_range`` applies the salary-band tiers and exists for
range-estimate display (job postings without a fixed salary); it must not be
used to compute a Placement.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from .errors import ValidationError


class ExperienceLevel(str, Enum):
    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"
    EXECUTIVE = "executive"


FEE_PERCENTAGE_BY_LEVEL: dict[ExperienceLevel, int] = {
    ExperienceLevel.ENTRY: 15,
    ExperienceLevel.MID: 15,
    ExperienceLevel.SENIOR: 18,
    ExperienceLevel.EXECUTIVE: 20,
}

# (lower bound in cents, percentage), checked from the top band down
SALARY_BANDS: tuple[tuple[int, int], ...] = (
    (17_000_000, 20),
    (13_000_000, 18),
    (8_000_000, 15),
)

DEFAULT_UPFRONT_PERCENTAGE = 50
DEFAULT_GUARANTEE_PERIOD_DAYS = 90
DEFAULT_REMAINING_DUE_DAYS = 30


@dataclass(frozen=True)
class FeeBreakdown:
    fee_percentage: int
    placement_fee: int
    upfront_amount: int
    remaining_amount: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate_salary(salary: int) -> None:
    if isinstance(salary, bool) or not isinstance(salary, int):
        raise ValidationError("salary must be an integer amount in cents")
    if salary < 0:
        raise ValidationError("salary cannot be negative")


def _validate_percentage(name: str, value: int | float | Decimal) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    pct = Decimal(str(value))
    if pct < 0 or pct > 100:
        raise ValidationError(f"{name} must be between 0 and 100, got {value}")
    return pct


def coerce_experience_level(value: str | ExperienceLevel) -> ExperienceLevel:
    if isinstance(value, ExperienceLevel):
        return value
    normalized = str(value or "").strip().lower().replace("_level", "")
    try:
        return ExperienceLevel(normalized)
    except ValueError as exc:
        raise ValidationError(f"Unknown experience level '{value}'") from exc


def fee_percentage_for_level(experience_level: str | ExperienceLevel) -> int:
    return FEE_PERCENTAGE_BY_LEVEL[coerce_experience_level(experience_level)]


def split_fee(placement_fee: int, upfront_percentage: int | float = DEFAULT_UPFRONT_PERCENTAGE) -> tuple[int, int]:
    """Split a fee into (upfront, remaining). Only the upfront leg is rounded."""
    if placement_fee < 0:
        raise ValidationError("placement fee cannot be negative")
    pct = _validate_percentage("upfront_percentage", upfront_percentage)
    upfront = _round_cents(Decimal(placement_fee) * pct / Decimal(100))
    return upfront, placement_fee - upfront


def calculate_fee_for_percentage(
    salary: int,
    fee_percentage: int | float,
    *,
    upfront_percentage: int | float = DEFAULT_UPFRONT_PERCENTAGE,
) -> FeeBreakdown:
    _validate_salary(salary)
    pct = _validate_percentage("fee_percentage", fee_percentage)
    placement_fee = _round_cents(Decimal(salary) * pct / Decimal(100))
    upfront, remaining = split_fee(placement_fee, upfront_percentage)
    return FeeBreakdown(
        fee_percentage=int(pct) if pct == pct.to_integral_value() else float(pct),
        placement_fee=placement_fee,
        upfront_amount=upfront,
        remaining_amount=remaining,
    )


def calculate_fee(
    salary: int,
    experience_level: str | ExperienceLevel,
    *,
    upfront_percentage: int | float = DEFAULT_UPFRONT_PERCENTAGE,
) -> FeeBreakdown:
    """Fee for a placement at ``salary`` cents.

    >>> calculate_fee(15_000_000, "senior")
    FeeBreakdown(fee_percentage=18, placement_fee=2700000, upfront_amount=1350000, remaining_amount=1350000)
    """
    return calculate_fee_for_percentage(
        salary,
        fee_percentage_for_level(experience_level),
        upfront_percentage=upfront_percentage,
    )


def fee_percentage_for_salary(salary: int) -> Optional[int]:
    """Salary-band tier, or None below the lowest band."""
    _validate_salary(salary)
    for lower_bound, pct in SALARY_BANDS:
        if salary >= lower_bound:
            return pct
    return None


def estimate_fee_for_salary_range(
    salary_min: Optional[int],
    salary_max: Optional[int],
) -> Optional[FeeBreakdown]:
    """Display estimate for a salary range, priced at the midpoint."""
    known = [value for value in (salary_min, salary_max) if value is not None]
    if not known:
        return None
    for value in known:
        _validate_salary(value)
    if len(known) == 2 and salary_min > salary_max:
        raise ValidationError("salary_min cannot exceed salary_max")

    midpoint = _round_cents(Decimal(sum(known)) / Decimal(len(known)))
    pct = fee_percentage_for_salary(midpoint)
    if pct is None:
        # Below the lowest band the entry tier applies
        pct = SALARY_BANDS[-1][1]
    return calculate_fee_for_percentage(midpoint, pct)


def guarantee_end_date(start_date: date | datetime, days: int = DEFAULT_GUARANTEE_PERIOD_DAYS) -> date:
    if days < 0:
        raise ValidationError("guarantee period cannot be negative")
    if isinstance(start_date, datetime):
        start_date = start_date.date()
    return start_date + timedelta(days=days)


def remaining_due_date(upfront_paid_at: datetime, days: int = DEFAULT_REMAINING_DUE_DAYS) -> datetime:
    return upfront_paid_at + timedelta(days=days)
