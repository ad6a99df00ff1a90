"""
Payout Calculator.

Pure, deterministic impermanent-loss payout formula shared by the compute
worker (off-ledger) and the settlement executor (bound check):

    hodl   = x0 · P / PRICE_SCALE + y0
    lp     = x1 · P / PRICE_SCALE + y1 + fees
    IL     = max(0, hodl − lp)
    deduct = IL · deductible_bps / 10000
    before = max(0, IL − deduct)
    cap    = hodl · cap_bps / 10000
    payout = min(before, cap)

Unsigned fixed-point integers throughout. Subtractions clamp at zero,
divisions floor, and any intermediate above MAX_UINT256 raises
PayoutOverflow.
"""

from dataclasses import dataclass
from typing import Dict

from ilguard.core.exceptions import PayoutOverflow
from ilguard.core.models import (
    BPS,
    MAX_UINT256,
    PRICE_SCALE,
    PositionSnapshot,
    require_uint,
)


def _checked(value: int, what: str) -> int:
    if value > MAX_UINT256:
        raise PayoutOverflow(f"{what} exceeds uint256", {"operation": what})
    return value


def _mul(a: int, b: int, what: str) -> int:
    return _checked(a * b, what)


def _add(a: int, b: int, what: str) -> int:
    return _checked(a + b, what)


def _sub_floor(a: int, b: int) -> int:
    return a - b if a > b else 0


def hodl_value(x0: int, y0: int, price_at_exit: int) -> int:
    """Value of the entry amounts had they simply been held."""
    require_uint(x0, "x0")
    require_uint(y0, "y0")
    require_uint(price_at_exit, "price_at_exit")
    token0_value = _mul(x0, price_at_exit, "x0*price") // PRICE_SCALE
    return _add(token0_value, y0, "hodl_value")


def lp_value(x1: int, y1: int, fees_earned: int, price_at_exit: int) -> int:
    """Value of the exit amounts plus fees earned while providing liquidity."""
    require_uint(x1, "x1")
    require_uint(y1, "y1")
    require_uint(fees_earned, "fees_earned")
    require_uint(price_at_exit, "price_at_exit")
    token0_value = _mul(x1, price_at_exit, "x1*price") // PRICE_SCALE
    return _add(_add(token0_value, y1, "lp_value"), fees_earned, "lp_value")


@dataclass(frozen=True)
class PayoutBreakdown:
    hodl_value:         int
    lp_value:           int
    impermanent_loss:   int
    deductible_amount:  int
    payout_before_cap:  int
    cap_amount:         int
    payout:             int

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.__dict__.items()}


def payout_from_values(
    hodl:            int,
    lp:              int,
    deductible_bps:  int,
    cap_bps:         int,
) -> PayoutBreakdown:
    """Apply IL, deductible and cap to already-valued positions."""
    require_uint(hodl, "hodl_value")
    require_uint(lp, "lp_value")
    require_uint(deductible_bps, "deductible_bps")
    require_uint(cap_bps, "cap_bps")

    il         = _sub_floor(hodl, lp)
    deductible = _mul(il, deductible_bps, "il*deductible_bps") // BPS
    before_cap = _sub_floor(il, deductible)
    cap        = _mul(hodl, cap_bps, "hodl*cap_bps") // BPS

    return PayoutBreakdown(
        hodl_value=        hodl,
        lp_value=          lp,
        impermanent_loss=  il,
        deductible_amount= deductible,
        payout_before_cap= before_cap,
        cap_amount=        cap,
        payout=            min(before_cap, cap),
    )


def compute_payout(
    entry_position:  PositionSnapshot,
    exit_position:   PositionSnapshot,
    price_at_exit:   int,
    deductible_bps:  int,
    cap_bps:         int,
) -> PayoutBreakdown:
    """Full formula from entry/exit snapshots and the exit price."""
    hodl = hodl_value(entry_position.amount0, entry_position.amount1, price_at_exit)
    lp   = lp_value(
        exit_position.amount0,
        exit_position.amount1,
        exit_position.fees_earned,
        price_at_exit,
    )
    return payout_from_values(hodl, lp, deductible_bps, cap_bps)
