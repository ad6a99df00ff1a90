"""
ILGuard Settlement - pays approved claims out of the reserve.
"""

from ilguard.consensus.task import SettlementDecision
from ilguard.settlement.executor import SettlementExecutor, SettlementRecord

__all__ = ["SettlementDecision", "SettlementExecutor", "SettlementRecord"]
