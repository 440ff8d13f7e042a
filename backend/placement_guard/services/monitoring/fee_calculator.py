"""
Fee Calculator

Placement fee owed = salary x percentage / 100, rounded half-up to whole
currency units. Pure; never touches a flag's status.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from ...config import DEFAULT_FEE_PERCENTAGE
from ..errors import ValidationError


Number = Union[int, float, str, Decimal]

WHOLE_UNITS = Decimal("1")


def to_decimal(value: Number, field_name: str) -> Decimal:
    """Coerce user or database input to Decimal, rejecting junk."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def recalculate(
    estimated_salary: Number,
    fee_percentage: Number = DEFAULT_FEE_PERCENTAGE,
) -> Decimal:
    """
    Compute the fee owed for a salary and fee percentage.

    Raises:
        ValidationError: salary <= 0 or percentage outside (0, 100]
    """
    salary = to_decimal(estimated_salary, "estimated_salary")
    percentage = to_decimal(fee_percentage, "fee_percentage")

    if salary <= 0:
        raise ValidationError("estimated_salary must be greater than 0")
    if percentage <= 0 or percentage > 100:
        raise ValidationError("fee_percentage must be in (0, 100]")

    return (salary * percentage / Decimal(100)).quantize(WHOLE_UNITS, rounding=ROUND_HALF_UP)


def apply_to_flag(flag, estimated_salary: Number, fee_percentage: Number = DEFAULT_FEE_PERCENTAGE) -> Decimal:
    """Set the three fee fields on a flag together. Status is left alone."""
    fee_owed = recalculate(estimated_salary, fee_percentage)
    flag.estimated_salary = to_decimal(estimated_salary, "estimated_salary")
    flag.fee_percentage = to_decimal(fee_percentage, "fee_percentage")
    flag.estimated_fee_owed = fee_owed
    return fee_owed
