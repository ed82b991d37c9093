"""
Allocation validation and amount splitting tests.
"""

import pytest

from inheritx.core.errors import (
    InvalidAmount,
    InvalidPercentage,
    PercentageMismatch,
    TooFewBeneficiaries,
    TooManyBeneficiaries,
)
from inheritx.modules.plans.allocation import (
    period_count,
    split_amount,
    split_evenly,
    validate_percentages,
    validate_periodic_percentage,
)


# ============================================================================
# Beneficiary percentages
# ============================================================================

def test_allocations_summing_to_10000_are_accepted():
    validate_percentages([6000, 4000])
    validate_percentages([10000])
    validate_percentages([1000] * 10)


def test_three_thirds_do_not_sum_to_10000():
    """3333/3333/3333 is 9999 bps and must be rejected."""
    with pytest.raises(PercentageMismatch):
        validate_percentages([3333, 3333, 3333])


def test_over_allocation_rejected():
    with pytest.raises(PercentageMismatch):
        validate_percentages([6000, 5000])


def test_beneficiary_count_bounds():
    with pytest.raises(TooFewBeneficiaries):
        validate_percentages([])
    with pytest.raises(TooManyBeneficiaries):
        validate_percentages([909] * 11)


@pytest.mark.parametrize("bad", [0, -100, 10001, True, 50.5])
def test_individual_allocation_out_of_range(bad):
    with pytest.raises(InvalidAmount):
        validate_percentages([bad, 10000])


# ============================================================================
# Periodic percentage
# ============================================================================

@pytest.mark.parametrize("percentage,periods", [(25, 4), (10, 10), (20, 5), (50, 2), (100, 1), (1, 100)])
def test_period_count_for_divisors_of_100(percentage, periods):
    assert period_count(percentage) == periods


@pytest.mark.parametrize("percentage", [30, 33, 0, 101, -25])
def test_percentage_not_dividing_100_rejected(percentage):
    with pytest.raises(InvalidPercentage):
        validate_periodic_percentage(percentage)


# ============================================================================
# Amount splitting
# ============================================================================

def test_split_amount_floors_and_gives_remainder_to_last():
    shares = split_amount(100, [3333, 3333, 3334])
    assert shares == [33, 33, 34]
    assert sum(shares) == 100


def test_split_amount_60_40():
    assert split_amount(1_000_000, [6000, 4000]) == [600_000, 400_000]


def test_split_amount_never_exceeds_total():
    total = 10**21 + 7
    shares = split_amount(total, [1234, 4321, 4445])
    assert sum(shares) == total


def test_split_evenly_remainder_on_final_part():
    assert split_evenly(1003, 4) == [250, 250, 250, 253]
    assert split_evenly(0, 3) == [0, 0, 0]


def test_split_evenly_rejects_zero_parts():
    with pytest.raises(InvalidAmount):
        split_evenly(10, 0)
