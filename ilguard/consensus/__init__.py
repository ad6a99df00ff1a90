"""
ILGuard Consensus - independent attestors agree on a claim's payout.
"""

from ilguard.consensus.attestor import AttestorNode
from ilguard.consensus.manager import AttestationConsensusManager
from ilguard.consensus.task import (
    ConsensusTask,
    SettlementDecision,
    Vote,
    vote_payload,
)

__all__ = [
    "AttestationConsensusManager",
    "AttestorNode",
    "ConsensusTask",
    "SettlementDecision",
    "Vote",
    "vote_payload",
]
