"""
tests/test_payout_calculator.py

Payout formula properties.

  SCENARIOS
    hodl 1000 / lp 700, deductible 10%, cap 50%  → 270
    hodl 1000 / lp 1000 (no loss)               → 0
    cap binds when the loss is large

  PROPERTIES
    IL ≥ 0, payout ≤ IL, payout ≤ cap
    floor division, clamped subtraction
    overflow fails closed with PayoutOverflow
"""

import pytest

from ilguard.core.exceptions import InvalidParameters, PayoutOverflow
from ilguard.core.models import MAX_UINT256, PRICE_SCALE, PositionSnapshot
from ilguard.payout.calculator import (
    compute_payout,
    hodl_value,
    lp_value,
    payout_from_values,
)


class TestScenarios:

    def test_partial_loss_with_deductible(self):
        b = payout_from_values(1000, 700, deductible_bps=1000, cap_bps=5000)
        assert b.impermanent_loss == 300
        assert b.deductible_amount == 30
        assert b.payout_before_cap == 270
        assert b.cap_amount == 500
        assert b.payout == 270

    def test_no_loss_pays_zero(self):
        b = payout_from_values(1000, 1000, deductible_bps=1000, cap_bps=5000)
        assert b.impermanent_loss == 0
        assert b.payout == 0

    def test_lp_above_hodl_clamps_to_zero(self):
        b = payout_from_values(1000, 1500, deductible_bps=0, cap_bps=10_000)
        assert b.impermanent_loss == 0
        assert b.payout == 0

    def test_cap_binds(self):
        b = payout_from_values(1000, 100, deductible_bps=0, cap_bps=2000)
        assert b.payout_before_cap == 900
        assert b.cap_amount == 200
        assert b.payout == 200

    def test_full_deductible_pays_nothing(self):
        b = payout_from_values(1000, 700, deductible_bps=10_000, cap_bps=10_000)
        assert b.payout == 0

    def test_compute_payout_from_positions(self):
        b = compute_payout(
            PositionSnapshot(1000, 0),
            PositionSnapshot(700, 0),
            PRICE_SCALE,
            deductible_bps=1000,
            cap_bps=5000,
        )
        assert (b.hodl_value, b.lp_value, b.payout) == (1000, 700, 270)

    def test_fees_reduce_loss(self):
        b = compute_payout(
            PositionSnapshot(1000, 0),
            PositionSnapshot(700, 0, fees_earned=100),
            PRICE_SCALE,
            deductible_bps=0,
            cap_bps=10_000,
        )
        assert b.impermanent_loss == 200


class TestValuation:

    def test_hodl_value_scales_price(self):
        # 10 token0 at 2.5 token1 each, plus 3 token1
        assert hodl_value(10, 3, 25 * PRICE_SCALE // 10) == 28

    def test_division_floors(self):
        assert hodl_value(1, 0, PRICE_SCALE - 1) == 0

    def test_lp_value_includes_fees(self):
        assert lp_value(1, 1, 5, PRICE_SCALE) == 7

    def test_deductible_floors(self):
        b = payout_from_values(1000, 997, deductible_bps=5000, cap_bps=10_000)
        assert b.impermanent_loss == 3
        assert b.deductible_amount == 1
        assert b.payout == 2


class TestProperties:

    @pytest.mark.parametrize("hodl,lp,ded,cap", [
        (0, 0, 0, 0),
        (1, 0, 0, 10_000),
        (10**30, 10**29, 250, 7_500),
        (12345, 6789, 9999, 1),
        (500, 499, 0, 10_000),
        (10**18, 5 * 10**17, 10_000, 10_000),
    ])
    def test_payout_bounded_by_loss_and_cap(self, hodl, lp, ded, cap):
        b = payout_from_values(hodl, lp, ded, cap)
        assert b.impermanent_loss >= 0
        assert b.payout <= b.impermanent_loss
        assert b.payout <= b.cap_amount

    def test_deterministic(self):
        assert payout_from_values(999, 1, 123, 4567) == payout_from_values(999, 1, 123, 4567)

    def test_breakdown_serializes_as_strings(self):
        d = payout_from_values(1000, 700, 1000, 5000).to_dict()
        assert d["payout"] == "270"
        assert all(isinstance(v, str) for v in d.values())


class TestFailClosed:

    def test_overflow_on_price_multiplication(self):
        with pytest.raises(PayoutOverflow):
            hodl_value(MAX_UINT256, 0, 2)

    def test_overflow_on_addition(self):
        with pytest.raises(PayoutOverflow):
            lp_value(0, MAX_UINT256, 1, PRICE_SCALE)

    def test_overflow_on_cap_multiplication(self):
        with pytest.raises(PayoutOverflow):
            payout_from_values(MAX_UINT256, 0, 0, 2)

    def test_negative_input_rejected(self):
        with pytest.raises(InvalidParameters):
            payout_from_values(-1, 0, 0, 0)

    def test_bool_is_not_an_amount(self):
        with pytest.raises(InvalidParameters):
            hodl_value(True, 0, PRICE_SCALE)
