"""
ILGuard Payout Calculator

Pure impermanent-loss payout formula. No I/O, no state.
"""

from ilguard.payout.calculator import (
    PayoutBreakdown,
    compute_payout,
    hodl_value,
    lp_value,
    payout_from_values,
)

__all__ = [
    "PayoutBreakdown",
    "compute_payout",
    "hodl_value",
    "lp_value",
    "payout_from_values",
]
