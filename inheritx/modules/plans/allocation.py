"""
Allocation validation and amount splitting.

Pure functions: no database access, no side effects.
"""

from typing import List, Sequence

from inheritx.core.errors import (
    InvalidAmount,
    InvalidPercentage,
    PercentageMismatch,
    TooFewBeneficiaries,
    TooManyBeneficiaries,
)

TOTAL_BASIS_POINTS = 10000
MIN_BENEFICIARIES = 1
MAX_BENEFICIARIES = 10


def validate_percentages(allocations: Sequence[int]) -> None:
    """
    Validate a set of beneficiary allocations in basis points.

    Raises:
        TooFewBeneficiaries / TooManyBeneficiaries: count outside [1, 10]
        InvalidAmount: an individual allocation outside 1..10000
        PercentageMismatch: allocations do not sum to exactly 10000
    """
    count = len(allocations)
    if count < MIN_BENEFICIARIES:
        raise TooFewBeneficiaries(f"Got {count} beneficiaries")
    if count > MAX_BENEFICIARIES:
        raise TooManyBeneficiaries(f"Got {count} beneficiaries")

    for bps in allocations:
        if not isinstance(bps, int) or isinstance(bps, bool) or not 1 <= bps <= TOTAL_BASIS_POINTS:
            raise InvalidAmount(f"Allocation {bps!r} is not between 1 and {TOTAL_BASIS_POINTS} bps")

    total = sum(allocations)
    if total != TOTAL_BASIS_POINTS:
        raise PercentageMismatch(f"Allocations sum to {total} bps, expected {TOTAL_BASIS_POINTS}")


def validate_periodic_percentage(percentage: int) -> None:
    """Percentage per period must evenly divide 100 so whole periods cover exactly 100%."""
    if not isinstance(percentage, int) or isinstance(percentage, bool):
        raise InvalidPercentage(f"Periodic percentage {percentage!r} is not an integer")
    if not 1 <= percentage <= 100 or 100 % percentage != 0:
        raise InvalidPercentage(f"Periodic percentage {percentage} does not divide 100")


def period_count(percentage: int) -> int:
    """Number of periods for a validated periodic percentage (25 -> 4)."""
    validate_periodic_percentage(percentage)
    return 100 // percentage


def split_amount(total: int, weights: Sequence[int], denominator: int = TOTAL_BASIS_POINTS) -> List[int]:
    """
    Split an integer amount by weights, flooring each share.

    The rounding remainder goes to the last share so the parts always sum to total.
    """
    if total < 0:
        raise InvalidAmount("Amount cannot be negative")
    if not weights:
        return []
    shares = [total * w // denominator for w in weights]
    if sum(weights) == denominator:
        shares[-1] += total - sum(shares)
    return shares


def split_evenly(total: int, parts: int) -> List[int]:
    """Split an amount into equal parts with the remainder on the final part."""
    if parts < 1:
        raise InvalidAmount("Cannot split into fewer than one part")
    base = total // parts
    shares = [base] * parts
    shares[-1] += total - base * parts
    return shares
